"""
Mint Request Rate Limiting

Limits how many mint requests a single client may submit per time window, so one caller cannot
monopolize a curve's exclusive lock or flood the settlement backend with payment checks.

Algorithm:
- Fixed window per client: a counter and the timestamp the window opened
- The window resets once it is older than ``window`` seconds
- Entries are kept in an OrderedDict in least-recently-used order, and expired entries are
  swept when the cache grows past ``max_entries``

Quotes and other read-only tools are not rate limited.
"""
import time
from collections import OrderedDict
from typing import Optional, Tuple

from mcp_bonding_curve import config
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    def __init__(self, limit: Optional[int] = None, window: int = 60, max_entries: int = 1000):
        self.limit = config.RATE_LIMIT_PER_MINUTE if limit is None else limit
        self.window = window
        self.max_entries = max_entries
        # {client: (count, window_start)}
        self.cache: "OrderedDict[str, Tuple[int, float]]" = OrderedDict()

    def check(self, client: str, now: Optional[float] = None) -> bool:
        """
        Records one request from ``client``.

        Returns:
            True if the request is allowed, False if the client is over its limit.
        """
        now = time.time() if now is None else now

        if len(self.cache) > self.max_entries:
            self.cleanup(now - self.window)

        count, started = self.cache.get(client, (0, now))
        if now - started >= self.window:
            count, started = 0, now
            logger.debug(f"Rate limit window reset for client: {client}")

        if count >= self.limit:
            logger.warning(f"Rate limit exceeded for client: {client}. Count: {count}, Limit: {self.limit}")
            return False

        self.cache[client] = (count + 1, started)
        self.cache.move_to_end(client)
        return True

    def cleanup(self, cutoff_time: float) -> int:
        """Removes entries whose window opened before ``cutoff_time``."""
        expired = [client for client, (_, started) in self.cache.items() if started < cutoff_time]
        for client in expired:
            del self.cache[client]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} old rate limit entries")
        return len(expired)

    def reset(self) -> None:
        self.cache.clear()


limiter = RateLimiter()


def check_rate_limit(client: str) -> bool:
    return limiter.check(client)
