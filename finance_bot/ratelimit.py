import math
import time
from collections import deque
from typing import Callable

from finance_bot.errors import RateLimited


class UserRateLimiter:
    """Sliding-window limit of requests per user."""

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window = window_seconds
        self.clock = clock
        self._requests: dict[int, deque[float]] = {}
        self._last_cleanup = clock()

    def check(self, user_id: int) -> None:
        """Count a request, or raise ``RateLimited`` with a retry-after hint."""
        now = self.clock()
        if now - self._last_cleanup >= self.window:
            self.cleanup()
        requests = self._requests.setdefault(user_id, deque())
        while requests and requests[0] <= now - self.window:
            requests.popleft()

        if len(requests) >= self.max_requests:
            retry_after = max(1, math.ceil(self.window - (now - requests[0])))
            raise RateLimited(retry_after)
        requests.append(now)

    def cleanup(self) -> int:
        """Forget users with no request inside the window."""
        now = self.clock()
        self._last_cleanup = now
        idle = [
            user_id
            for user_id, requests in self._requests.items()
            if not requests or requests[-1] <= now - self.window
        ]
        for user_id in idle:
            del self._requests[user_id]
        return len(idle)
