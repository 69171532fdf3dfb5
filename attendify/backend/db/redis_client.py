import logging
from typing import Optional
from uuid import UUID
import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Compare-and-increment: refuses once the counter has reached the cap,
# otherwise increments and refreshes the TTL. Returns -1 when refused.
RESERVE_ATTEMPT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[1]) then
    return -1
end
current = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
return current
"""


class RedisClient:
    """
    Redis client for the short-lived verification state (per-student attempt counters).
    """

    def __init__(self, pool: redis.ConnectionPool):
        self._redis = redis.Redis(connection_pool=pool, decode_responses=True)
        self._reserve_attempt = self._redis.register_script(RESERVE_ATTEMPT_SCRIPT)

    @staticmethod
    def _attempt_key(session_id: UUID, student_id: str) -> str:
        return f"attempts:{session_id}:{student_id}"

    # ===== Attempt Counters =====

    async def get_attempt_count(self, session_id: UUID, student_id: str) -> int:
        value = await self._redis.get(self._attempt_key(session_id, student_id))
        return int(value) if value else 0

    async def reserve_attempt(self, session_id: UUID, student_id: str, max_attempts: int, ttl_seconds: int) -> Optional[int]:
        """
        Atomically claims one attempt slot for the student in the session.

        Returns the attempt number (1-based), or None once max_attempts slots
        were already claimed. Two racing requests can never both get the last slot.
        """
        result = await self._reserve_attempt(
            keys=[self._attempt_key(session_id, student_id)],
            args=[max_attempts, ttl_seconds]
        )
        result = int(result)
        return None if result < 0 else result

    async def clear_attempts(self, session_id: UUID) -> int:
        """Deletes every attempt counter of a session."""
        deleted = 0
        async for key in self._redis.scan_iter(f"attempts:{session_id}:*"):
            deleted += await self._redis.delete(key)
        return deleted
