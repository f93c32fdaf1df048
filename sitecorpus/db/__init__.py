"""Record store contract, Supabase repository and query timing helpers."""

from sitecorpus.db.query_executor import QueryTimer, timed_query
from sitecorpus.db.repository import SupabaseRecordStore
from sitecorpus.db.store import RecordStore

__all__ = [
    "QueryTimer",
    "timed_query",
    "RecordStore",
    "SupabaseRecordStore",
]
