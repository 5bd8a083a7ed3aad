"""Sliding-window counters backed by Redis sorted sets."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from redis.exceptions import RedisError

from trustlayer.infra.redis import RedisProxy, redis_client
from trustlayer.obs import metrics

logger = logging.getLogger(__name__)

# Entries live a little longer than the window so a quiet key still expires.
EXPIRY_GRACE_MILLIS = 60_000

# KEYS[1] = window key
# ARGV = now_ms, window_ms, limit, member, ttl_ms
_CHECK_AND_RECORD = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
local count = redis.call('ZCARD', KEYS[1])
if count >= limit then
	return 1
end
redis.call('ZADD', KEYS[1], now, ARGV[4])
redis.call('PEXPIRE', KEYS[1], tonumber(ARGV[5]))
return 0
"""


class RateWindow:
	"""Sliding time window shared by write-rate limiting and burst detection.

	Trimming, counting and the conditional insert run inside one Lua script so
	concurrent callers hitting the same key behave as if serialized.
	"""

	def __init__(self, redis: RedisProxy | None = None, *, kind: str = "generic") -> None:
		self._redis = redis or redis_client
		self._kind = kind

	async def check_and_record(
		self,
		key: str,
		*,
		window_millis: int,
		limit: int,
		now_millis: Optional[int] = None,
	) -> bool:
		"""Return True when the window is already full; otherwise record one hit.

		Cache failures fail open: the call reports "not exceeded".
		"""

		now = now_millis if now_millis is not None else int(time.time() * 1000)
		window = max(1, int(window_millis))
		member = f"{now}:{uuid.uuid4()}"
		try:
			exceeded = await self._redis.eval(
				_CHECK_AND_RECORD,
				1,
				key,
				now,
				window,
				int(limit),
				member,
				window + EXPIRY_GRACE_MILLIS,
			)
		except (RedisError, OSError):
			logger.warning("rate_window_fail_open", extra={"key": key, "kind": self._kind}, exc_info=True)
			metrics.RATE_WINDOW_FAIL_OPEN.labels(kind=self._kind).inc()
			return False
		return int(exceeded) == 1

	async def reset(self, key: str) -> None:
		try:
			await self._redis.delete(key)
		except (RedisError, OSError):
			logger.warning("rate_window_reset_failed", extra={"key": key}, exc_info=True)
