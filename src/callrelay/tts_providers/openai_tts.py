from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from src.callrelay.audio import AudioFormat
from src.callrelay.config import get_config
from src.callrelay.tts_providers.base import TTSProvider
from src.callrelay.tts_types import SynthesizedAudio

logger = structlog.get_logger(__name__)

# The WAV header carries the real rate; the pipeline reads it during conversion.
OPENAI_WAV_FORMAT = AudioFormat(encoding="pcm_s16le", sample_rate=24000, channels=1, container="wav")


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    This provider synthesizes a full WAV in a worker thread.
    """

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._cancelled = False
        self._inflight: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        self._cancelled = True
        if self._inflight and not self._inflight.done():
            self._inflight.cancel()

    async def _generate_wav(self, text: str) -> bytes:
        from openai import OpenAI  # Local import to keep module import light

        client = OpenAI(api_key=self.config.openai_api_key)

        def _call() -> bytes:
            resp = client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format="wav",
            )
            # SDKs have varied over time; handle several shapes.
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            read = getattr(resp, "read", None)
            if callable(read):
                return read()
            return bytes(resp)

        return await asyncio.to_thread(_call)

    async def synthesize(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> SynthesizedAudio:
        # `voice_id` is ignored; the voice comes from OPENAI_TTS_VOICE.
        if not text or not text.strip():
            return SynthesizedAudio(b"", OPENAI_WAV_FORMAT)

        self._cancelled = False
        task = asyncio.create_task(self._generate_wav(text))
        self._inflight = task

        try:
            wav_bytes = await task
        except asyncio.CancelledError:
            if self._cancelled:
                return SynthesizedAudio(b"", OPENAI_WAV_FORMAT)
            raise
        except Exception as e:
            logger.warning("OpenAI TTS failed", error_type=type(e).__name__, error=str(e))
            return SynthesizedAudio(b"", OPENAI_WAV_FORMAT)
        finally:
            if self._inflight is task:
                self._inflight = None

        if self._cancelled:
            return SynthesizedAudio(b"", OPENAI_WAV_FORMAT)

        return SynthesizedAudio(wav_bytes, OPENAI_WAV_FORMAT)
