"""Redis-backed caching.

Only one view is cached: the public listing of active broadcasts. The
database stays the source of truth — every writer deletes the cached
listing after its commit, and any Redis failure falls back to the database.
"""
