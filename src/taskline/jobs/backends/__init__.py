"""Queue storage backends.

- memory: process-local storage for tests and embedded use
- redis: shared storage for multi-process workers
"""

from taskline.jobs.backends.memory import MemoryConnection, MemoryConnectionFactory
from taskline.jobs.backends.redis import RedisConnection, RedisConnectionFactory

__all__ = [
    "MemoryConnection",
    "MemoryConnectionFactory",
    "RedisConnection",
    "RedisConnectionFactory",
]
