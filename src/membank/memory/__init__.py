"""Entry store: append-only memory with schema migration and recovery.

Layout:
    <workspace>/.membank/
    ├── memory.db                      # entries, schema_version, token/query metrics
    ├── memory.db.v<N>.backup          # only while a migration from vN runs
    ├── memory.db.corrupt-<ts>         # a corrupt file moved aside by recovery
    └── .backup/
        └── memory-<ts>.db             # recovery snapshots (newest 5 kept)

When no SQLite engine opens, the same data lives in ``memory.json``.
"""
