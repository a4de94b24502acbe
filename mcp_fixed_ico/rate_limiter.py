"""
Purchase Rate Limiting

Limits how many purchase requests a single client IP can submit within a
sliding 60-second window. Entries are kept in an OrderedDict in LRU order and
expired entries are cleaned up once the cache grows past ``max_entries``.
"""
import time
from collections import OrderedDict
from typing import Tuple

from mcp_fixed_ico.config import RATE_LIMIT_PER_MINUTE
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    def __init__(self, limit: int = RATE_LIMIT_PER_MINUTE, window: int = 60, max_entries: int = 1000):
        self.limit = limit
        self.window = window
        self.max_entries = max_entries
        # {ip: (count, first_request_timestamp_in_window)}
        self.cache: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()

    def check(self, ip: str) -> bool:
        """
        Records a request from ``ip``.

        Returns:
            True if the request is allowed, False if the rate limit is exceeded.
        """
        now = int(time.time())

        if len(self.cache) > self.max_entries:
            self.cleanup(now - self.window)

        count, timestamp = self.cache.get(ip, (0, now))
        if now - timestamp >= self.window:
            count, timestamp = 0, now
            logger.debug(f"Rate limit window reset for IP: {ip}")

        if count >= self.limit:
            logger.warning(f"Rate limit exceeded for IP: {ip}. Count: {count}, Limit: {self.limit}")
            return False

        self.cache[ip] = (count + 1, timestamp)
        self.cache.move_to_end(ip)
        return True

    def reset(self, ip: str) -> None:
        self.cache.pop(ip, None)

    def cleanup(self, cutoff_time: int) -> None:
        """Removes entries whose window started before ``cutoff_time``."""
        expired = [ip for ip, (_, timestamp) in self.cache.items() if timestamp < cutoff_time]
        for ip in expired:
            del self.cache[ip]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} old rate limit entries")
