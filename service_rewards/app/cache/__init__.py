"""
Cache package for the Rewards Service.

Provides the Redis pub/sub listener that turns policy change notifications
into registry invalidations, so admin edits take effect before the cache TTL
runs out.
"""
