"""
Call registry: hands metadata from the place-call request to the media stream.

Entries are keyed by the Twilio call SID, registered once when the call is
placed, claimed once when the media stream attaches, and released when the
session closes. Unclaimed entries expire after a TTL so the map never grows
without bound.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CallMetadata:
    """What the place-call request knew about the callee."""
    call_sid: str
    phone: str = ""
    lead_id: str = ""
    created_at: float = field(default_factory=time.time)

    def as_context(self) -> str:
        """Extra system context for reply generation."""
        parts = []
        if self.lead_id:
            parts.append(f"Lead ID: {self.lead_id}")
        if self.phone:
            parts.append(f"Callee phone number: {self.phone}")
        return "\n".join(parts)


@dataclass
class _Entry:
    metadata: CallMetadata
    registered_at: float
    claimed: bool = False


class CallRegistry:
    """In-process registry of placed calls."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, call_sid: str) -> bool:
        return call_sid in self._entries

    def register(self, metadata: CallMetadata) -> None:
        """
        Register a newly placed call.

        Raises:
            ValueError: If the call SID is empty or already registered
        """
        self.purge_expired()
        if not metadata.call_sid:
            raise ValueError("call_sid is required")
        if metadata.call_sid in self._entries:
            raise ValueError(f"Call already registered: {metadata.call_sid}")
        self._entries[metadata.call_sid] = _Entry(metadata=metadata, registered_at=self._clock())
        logger.info("Call registered", call_sid=metadata.call_sid, lead_id=metadata.lead_id)

    def claim(self, call_sid: str) -> Optional[CallMetadata]:
        """Return the call's metadata the first time it is asked for, else None."""
        self.purge_expired()
        entry = self._entries.get(call_sid)
        if entry is None or entry.claimed:
            return None
        entry.claimed = True
        logger.debug("Call metadata claimed", call_sid=call_sid)
        return entry.metadata

    def release(self, call_sid: str) -> None:
        """Drop the entry once its session has closed."""
        if self._entries.pop(call_sid, None) is not None:
            logger.debug("Call metadata released", call_sid=call_sid)

    def purge_expired(self) -> int:
        """Remove unclaimed entries older than the TTL; claimed entries live until released."""
        now = self._clock()
        expired = [
            sid
            for sid, entry in self._entries.items()
            if not entry.claimed and now - entry.registered_at > self.ttl_seconds
        ]
        for sid in expired:
            del self._entries[sid]
        if expired:
            logger.info("Expired unclaimed calls", count=len(expired))
        return len(expired)


# Singleton instance
_registry_instance: Optional[CallRegistry] = None


def get_call_registry() -> CallRegistry:
    """Get or create the process-wide CallRegistry."""
    global _registry_instance

    if _registry_instance is None:
        from src.callrelay.config import get_config

        _registry_instance = CallRegistry(ttl_seconds=get_config().call_registry_ttl_seconds)

    return _registry_instance
