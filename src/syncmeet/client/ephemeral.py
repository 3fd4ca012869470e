"""
Transient room signals: floating reactions and raised hands.

Reactions expire on their own after a fixed time; each one carries its own
timer so a burst of identical emoji from the same sender stays distinct.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Set
from uuid import uuid4

from syncmeet.config import settings
from syncmeet.managers.logging_manager import get_logger

logger = get_logger(prefix="[Ephemeral-Signals]")


@dataclass(frozen=True)
class Reaction:
    id: str
    source_connection_id: str
    emoji: str
    created_at: float = field(default_factory=time.monotonic)


class ReactionBoard:
    """
    Currently visible reactions.

    Args:
        ttl: Seconds a reaction stays visible
    """

    def __init__(self, ttl: Optional[float] = None):
        self.ttl = settings.REACTION_TTL_SECONDS if ttl is None else ttl
        self._active: Dict[str, Reaction] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def add(self, source_connection_id: str, emoji: str) -> Reaction:
        """Show a reaction and schedule its removal."""
        reaction = Reaction(id=uuid4().hex, source_connection_id=source_connection_id, emoji=emoji)
        self._active[reaction.id] = reaction
        loop = asyncio.get_running_loop()
        self._timers[reaction.id] = loop.call_later(self.ttl, self._expire, reaction.id)
        return reaction

    def _expire(self, reaction_id: str) -> None:
        self._timers.pop(reaction_id, None)
        if self._active.pop(reaction_id, None) is not None:
            logger.debug(f"Reaction {reaction_id} expired")

    @property
    def active(self) -> List[Reaction]:
        return list(self._active.values())

    def __len__(self) -> int:
        return len(self._active)

    def clear(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._active.clear()


class RaisedHands:
    """Set of participants with a raised hand, plus the local flag."""

    def __init__(self):
        self._raised: Set[str] = set()
        self.local_raised = False

    def apply(self, connection_id: str, is_raised: bool) -> None:
        if is_raised:
            self._raised.add(connection_id)
        else:
            self._raised.discard(connection_id)

    def toggle_local(self, local_connection_id: Optional[str]) -> bool:
        """Flip the local hand and return its new state."""
        self.local_raised = not self.local_raised
        if local_connection_id is not None:
            self.apply(local_connection_id, self.local_raised)
        return self.local_raised

    def discard(self, connection_id: str) -> None:
        self._raised.discard(connection_id)

    @property
    def raised(self) -> FrozenSet[str]:
        return frozenset(self._raised)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._raised

    def __len__(self) -> int:
        return len(self._raised)
