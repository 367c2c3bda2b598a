"""
authdb — Database connection layer for the auth backend.

Resolves which connection source to trust (DATABASE_URL, MYSQL_URL, discrete
DB_* variables), normalizes it into a ConnectionDescriptor, builds a tuned
SQLAlchemy pool, probes liveness and falls back to an in-memory store when no
external database can be reached.

Entry point for the service:

    from authdb.db.session import init_database, session_scope
    outcome = init_database()
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "cli"]
