"""Core Layer — pure message/event types, compaction logic, no IO, no async.

Invariants:
    - No module in core/ imports from services/, api/, infrastructure/, or db/
    - All functions are pure and deterministic (timestamps aside)

Design Decisions:
    - Functional core separated from imperative shell: the turn loop, tool engine
      and summarizer live in services/ and call into these pure helpers
"""
