"""
Signaling Rate Limiter

In-process rate limiting using a sliding window algorithm. Each (limit type,
connection) pair keeps the timestamps of its recent requests; state lives and
dies with the server process, like the rooms themselves.
"""

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple

from syncmeet.managers.logging_manager import get_logger
from syncmeet.webrtc.errors import RateLimitError
from syncmeet.webrtc.schemas import MessageType

logger = get_logger(prefix="[Signaling-RateLimit]")


@dataclass
class RateLimitConfig:
    """Configuration for a rate limit."""
    max_requests: int
    window_seconds: int


class SlidingWindowRateLimiter:
    """
    Sliding window limiter keyed by limit type and connection id.

    The sliding window algorithm:
    1. Drop timestamps older than the window
    2. Count remaining timestamps
    3. If count < limit, allow and record the new timestamp
    4. If count >= limit, reject and compute retry_after from the oldest entry
    """

    LIMITS = {
        "chat_message": RateLimitConfig(max_requests=60, window_seconds=60),
        "reaction": RateLimitConfig(max_requests=20, window_seconds=60),
        "hand_toggle": RateLimitConfig(max_requests=10, window_seconds=60),
        "media_toggle": RateLimitConfig(max_requests=30, window_seconds=60),
    }

    # Broadcast message types and the limit that applies to each
    MESSAGE_LIMITS = {
        MessageType.CHAT_MESSAGE: "chat_message",
        MessageType.SEND_REACTION: "reaction",
        MessageType.TOGGLE_HAND: "hand_toggle",
        MessageType.TOGGLE_MEDIA: "media_toggle",
    }

    def __init__(
        self,
        limits: Optional[Dict[str, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = dict(self.LIMITS if limits is None else limits)
        self._clock = clock
        self._windows: Dict[Tuple[str, str], Deque[float]] = {}

    def check_rate_limit(self, limit_type: str, identifier: str, increment: bool = True) -> bool:
        """
        Check if request is within rate limit using sliding window.

        Args:
            limit_type: Type of rate limit to check
            identifier: Connection id
            increment: Whether to record this request

        Returns:
            True if within limit

        Raises:
            RateLimitError: If rate limit is exceeded
        """
        config = self.limits.get(limit_type)
        if config is None:
            logger.warning(f"Unknown rate limit type: {limit_type}")
            return True

        now = self._clock()
        window = self._windows.setdefault((limit_type, identifier), deque())
        while window and window[0] <= now - config.window_seconds:
            window.popleft()

        if len(window) >= config.max_requests:
            retry_after = max(1, math.ceil(window[0] + config.window_seconds - now))
            logger.warning(
                "Rate limit exceeded",
                extra={
                    "limit_type": limit_type,
                    "identifier": identifier,
                    "current": len(window),
                    "max": config.max_requests,
                    "retry_after": retry_after,
                },
            )
            raise RateLimitError(
                limit_type=limit_type,
                current=len(window),
                max_allowed=config.max_requests,
                retry_after=retry_after,
            )

        if increment:
            window.append(now)
        return True

    def check_message(self, message_type: MessageType, identifier: str) -> bool:
        """Apply the limit mapped to a message type; unmapped types always pass."""
        limit_type = self.MESSAGE_LIMITS.get(message_type)
        if limit_type is None:
            return True
        return self.check_rate_limit(limit_type, identifier)

    def reset(self, identifier: str) -> None:
        """Forget every window of a connection."""
        for key in [key for key in self._windows if key[1] == identifier]:
            del self._windows[key]
