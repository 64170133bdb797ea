"""Persistence layer: SQLAlchemy ORM rows and async engine/session helpers."""
