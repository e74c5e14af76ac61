"""Infrastructure Layer — async primitives and external adapters.

Invariants:
    - Event channel and cancellation token are the only concurrency primitives
      the services layer uses
    - Provider SDK exceptions never escape this layer untranslated

Design Decisions:
    - Anthropic adapter isolated here: swapping providers touches no service code
"""
