"""Database Layer — declarative base shared by ORM models and alembic.

Invariants:
    - A single Base.metadata holds every table

Design Decisions:
    - Engine and sessions live in infrastructure/database.py; this package is schema only
"""
