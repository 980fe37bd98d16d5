from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from src.callrelay.tts_types import SynthesizedAudio


class TTSProvider(ABC):
    @abstractmethod
    async def synthesize(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> SynthesizedAudio:
        raise NotImplementedError

    def cancel(self) -> None:
        return None

    async def close(self) -> None:
        return None
