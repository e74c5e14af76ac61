"""turnloop — agentic conversation engine.

Invariants:
    - Package root holds only the version string (no import side-effects)

Design Decisions:
    - No star exports: explicit imports from the layer modules only
"""

__version__ = "0.1.0"
