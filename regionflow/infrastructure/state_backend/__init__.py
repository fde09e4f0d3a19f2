"""State backend implementations."""

from regionflow.infrastructure.state_backend.memory_backend import InMemoryStateBackend
from regionflow.infrastructure.state_backend.redis_backend import RedisStateBackend

__all__ = ["InMemoryStateBackend", "RedisStateBackend"]
