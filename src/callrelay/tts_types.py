from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional

from src.callrelay.audio import AudioFormat


@dataclass
class SynthesizedAudio:
    """
    One synthesized utterance as returned by a TTS provider.

    `audio_bytes` is in the provider's native `audio_format`; conversion to the
    carrier codec happens in the reply pipeline.
    """

    audio_bytes: bytes
    audio_format: AudioFormat
    timestamp: float = field(default_factory=time.time)

    # Optional: structured metadata for debugging/metrics.
    meta: Optional[dict[str, Any]] = None

    def __bool__(self) -> bool:
        return bool(self.audio_bytes)
