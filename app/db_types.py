"""Database-agnostic type definitions for SQLAlchemy models.

Fiscal invoices run on PostgreSQL in production and on SQLite in tests,
so column types here must work on both.
"""
from sqlalchemy import JSON, Uuid

# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid
