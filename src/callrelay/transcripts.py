"""
Transcript aggregation.

Turns streaming STT results into caller utterances. Only final results become
utterances, and a final whose text matches the utterance emitted within the
debounce window is dropped: Deepgram can report the same speech segment twice
(an `is_final` result followed by an `UtteranceEnd` replay).
"""

import re
import time
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_DEBOUNCE_MS = 900

_PUNCT_RE = re.compile(r"[^\w\s]+", re.UNICODE)
_SPACE_RE = re.compile(r"\s+")


@dataclass
class Utterance:
    """One finalized unit of caller speech."""
    text: str
    is_final: bool = True
    timestamp: float = field(default_factory=time.time)


def normalize_transcript(text: str) -> str:
    """Fold case, punctuation and whitespace so near-identical finals compare equal."""
    text = unicodedata.normalize("NFKC", text).casefold()
    text = _PUNCT_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()


class TranscriptAggregator:
    """Debounces final transcripts into utterances."""

    def __init__(
        self,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.debounce_s = max(0, debounce_ms) / 1000.0
        self._clock = clock
        self._last_norm: str = ""
        self._last_emitted_at: Optional[float] = None
        self.dropped_duplicates = 0

    def on_transcript_event(self, text: Any, is_final: Any) -> Optional[Utterance]:
        """
        Feed one STT event.

        Returns:
            An Utterance when the event completes new caller speech, else None
        """
        if not isinstance(text, str) or not isinstance(is_final, (bool, int)):
            logger.warning(
                "Dropping malformed transcript event",
                text_type=type(text).__name__,
                is_final_type=type(is_final).__name__,
            )
            return None

        stripped = text.strip()
        if not stripped or not is_final:
            return None

        norm = normalize_transcript(stripped)
        if not norm:
            return None

        now = self._clock()
        if (
            self._last_emitted_at is not None
            and norm == self._last_norm
            and (now - self._last_emitted_at) < self.debounce_s
        ):
            self.dropped_duplicates += 1
            logger.debug(
                "Duplicate final transcript debounced",
                since_last_ms=round((now - self._last_emitted_at) * 1000, 1),
            )
            return None

        self._last_norm = norm
        self._last_emitted_at = now
        return Utterance(text=stripped, is_final=True)
