"""StorePort strategies: SqlStore (PostgreSQL + Redis feed) and MemoryStore."""
