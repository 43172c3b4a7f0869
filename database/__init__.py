"""
Database layer — SQLAlchemy async persistence for PostgreSQL and SQLite.

Quick start:
  from database import Database
  db = Database(settings.database)
  await db.connect()
  async with db.session() as s:
      ...
  await db.close()
"""
from database.models import (
    Base, MessageRow, RateLimitRow, OwnerRow, RegistrationRow,
)
from database.session import Database

__all__ = [
    # ORM models
    "Base", "MessageRow", "RateLimitRow", "OwnerRow", "RegistrationRow",
    # Connection handle
    "Database",
]
