"""Declarative base and cross-dialect column types."""

from __future__ import annotations

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON on SQLite (test databases).
JsonType = JSONB().with_variant(JSON(), "sqlite")


class Base(DeclarativeBase):
    pass
