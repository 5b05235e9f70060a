"""
Memory module - generational, garbage-collected fact store.

Layers:
- engine: SQLite connection, schema, transactions
- ledger: append-only event log
- store: memory records and engagement counters
- gc: lifecycle policies (expire / promote / keep)
- queries: hot memories, activity rollups, stats

Storage: SQLite (WAL)
"""
