from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from src.callrelay.audio import CARRIER_FORMAT
from src.callrelay.config import get_config
from src.callrelay.tts_providers.base import TTSProvider
from src.callrelay.tts_providers.cartesia import CartesiaTTS, CartesiaTTSMetrics
from src.callrelay.tts_providers.openai_tts import OpenAITTS
from src.callrelay.tts_types import SynthesizedAudio

logger = structlog.get_logger(__name__)


class SpeechSynthesizer:
    """
    Per-call TTS manager with a pluggable provider system.

    - `cartesia`: WebSocket TTS returning 8kHz PCM (default)
    - `openai`: OpenAI Audio Speech API returning WAV

    `synthesize()` never raises for provider failures; it returns empty audio.
    """

    def __init__(self, config: Optional[Any] = None, provider: Optional[TTSProvider] = None):
        self.config = config or get_config()
        self._provider: Optional[TTSProvider] = provider

    def _create_provider(self) -> TTSProvider:
        tts = (self.config.tts_provider or "cartesia").strip().lower()

        if tts == "cartesia":
            return CartesiaTTS(self.config)

        if tts == "openai":
            return OpenAITTS(self.config)

        raise ValueError(f"Unsupported TTS_PROVIDER: {self.config.tts_provider}")

    async def start(self) -> None:
        if self._provider is None:
            self._provider = self._create_provider()

    async def stop(self) -> None:
        self.cancel_current()
        metrics = self.cartesia_metrics
        if metrics is not None and metrics.total_requests:
            logger.info(
                "Cartesia TTS metrics",
                requests=metrics.total_requests,
                characters=metrics.total_characters,
                audio_ms=round(metrics.total_audio_ms),
                avg_first_byte_ms=round(metrics.avg_first_byte_ms, 1),
                avg_total_ms=round(metrics.avg_total_ms, 1),
            )
        if self._provider:
            await self._provider.close()
            self._provider = None

    def cancel_current(self) -> None:
        if self._provider:
            self._provider.cancel()

    @property
    def cartesia_metrics(self) -> Optional[CartesiaTTSMetrics]:
        if isinstance(self._provider, CartesiaTTS):
            return self._provider.metrics
        return None

    async def synthesize(self, text: str, *, voice_id: Optional[str] = None) -> SynthesizedAudio:
        if not self._provider:
            await self.start()

        try:
            result = await self._provider.synthesize(text, voice_id=voice_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("TTS synthesis failed", error_type=type(e).__name__, error=str(e))
            return SynthesizedAudio(b"", CARRIER_FORMAT)

        if not result:
            logger.warning("TTS returned no audio", chars=len(text))
        return result
