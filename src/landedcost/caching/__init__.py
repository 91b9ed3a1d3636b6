from landedcost.caching.redis_client import RedisClient, RedisSessionLocks, get_redis_client

__all__ = ["RedisClient", "RedisSessionLocks", "get_redis_client"]
