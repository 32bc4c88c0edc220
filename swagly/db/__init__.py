"""
Database package - storage handle and ORM models
"""
from swagly.db.database import Base, Database

__all__ = ["Base", "Database"]
