"""
Cloud sync engine: keeps a local SQLite database and a shared PostgreSQL
database eventually consistent.
"""

__version__ = "0.1.0"
