"""
Persistence for the knowledge base: records and vault key/value pairs.
"""
from .kv_store import KeyValueStore
from .record_store import NewRecord, Record, RecordStore, record_size
