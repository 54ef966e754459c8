"""SQLAlchemy ORM models.

Session/user records are JSON blobs in a single key-value table; rule
tables are loaded from JSON config, not the database.
"""

from abeai.models.kv_entry import KeyValueEntry

__all__ = [
    "KeyValueEntry",
]
