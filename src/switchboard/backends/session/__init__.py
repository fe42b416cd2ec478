"""Session storage backends (redis, memory)."""

from switchboard.backends.session.memory import MemoryKeyValueStore
from switchboard.backends.session.redis import RedisKeyValueStore

__all__ = ["MemoryKeyValueStore", "RedisKeyValueStore"]
