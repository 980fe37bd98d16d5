from __future__ import annotations

import asyncio
import base64
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import structlog
import websockets

from src.callrelay.audio import AudioFormat
from src.callrelay.config import get_config
from src.callrelay.tts_providers.base import TTSProvider
from src.callrelay.tts_types import SynthesizedAudio

logger = structlog.get_logger(__name__)

# Cartesia can output 8kHz directly, so only the mu-law encode remains.
CARTESIA_SAMPLE_RATE = 8000
CARTESIA_WS_URL = "wss://api.cartesia.ai/tts/websocket"
CARTESIA_API_VERSION = "2024-06-10"
CARTESIA_FORMAT = AudioFormat(encoding="pcm_s16le", sample_rate=CARTESIA_SAMPLE_RATE, channels=1)


@dataclass
class CartesiaTTSMetrics:
    """Metrics for TTS performance."""

    total_requests: int = 0
    total_characters: int = 0
    total_audio_ms: float = 0.0
    avg_first_byte_ms: float = 0.0
    avg_total_ms: float = 0.0

    def record_synthesis(
        self,
        *,
        characters: int,
        audio_ms: float,
        first_byte_ms: float,
        total_ms: float,
    ) -> None:
        self.total_requests += 1
        self.total_characters += characters
        self.total_audio_ms += audio_ms

        # Running averages
        n = self.total_requests
        self.avg_first_byte_ms = (self.avg_first_byte_ms * (n - 1) + first_byte_ms) / n
        self.avg_total_ms = (self.avg_total_ms * (n - 1) + total_ms) / n


class CartesiaTTS(TTSProvider):
    """
    Cartesia TTS client using the WebSocket API.

    Collects the streamed PCM chunks for one transcript into a single buffer.
    """

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._metrics = CartesiaTTSMetrics()
        self._is_cancelled = False

    @property
    def metrics(self) -> CartesiaTTSMetrics:
        return self._metrics

    def cancel(self) -> None:
        self._is_cancelled = True
        logger.debug("Cartesia TTS cancelled")

    def _build_request(self, text: str, voice_id: str) -> dict[str, Any]:
        return {
            "context_id": uuid.uuid4().hex,
            "model_id": self.config.cartesia_model_id,
            "transcript": text,
            "voice": {"mode": "id", "id": voice_id},
            "output_format": {
                "container": "raw",
                "encoding": "pcm_s16le",
                "sample_rate": CARTESIA_SAMPLE_RATE,
            },
            "continue": False,
        }

    async def synthesize(
        self,
        text: str,
        *,
        voice_id: Optional[str] = None,
    ) -> SynthesizedAudio:
        if not text or not text.strip():
            return SynthesizedAudio(b"", CARTESIA_FORMAT)

        self._is_cancelled = False
        voice_id = voice_id or self.config.cartesia_voice_id

        start_time = time.time()
        first_byte_time: Optional[float] = None
        audio = bytearray()

        url = (
            f"{CARTESIA_WS_URL}?api_key={self.config.cartesia_api_key}"
            f"&cartesia_version={CARTESIA_API_VERSION}"
        )

        try:
            async with websockets.connect(url) as ws:
                await ws.send(json.dumps(self._build_request(text, voice_id)))

                async for message in ws:
                    if self._is_cancelled:
                        break

                    if isinstance(message, (bytes, bytearray)):
                        chunk = bytes(message)
                    else:
                        try:
                            data = json.loads(message)
                        except json.JSONDecodeError:
                            logger.warning("Invalid JSON from Cartesia")
                            continue

                        msg_type = data.get("type", "")
                        if msg_type == "done":
                            break
                        if msg_type == "error":
                            logger.error("Cartesia error", error=data.get("error") or data.get("message"))
                            return SynthesizedAudio(b"", CARTESIA_FORMAT)
                        if msg_type != "chunk" or not data.get("data"):
                            continue
                        chunk = base64.b64decode(data["data"])

                    if first_byte_time is None:
                        first_byte_time = time.time()
                    audio.extend(chunk)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Cartesia synthesis failed", error_type=type(e).__name__, error=str(e))
            return SynthesizedAudio(b"", CARTESIA_FORMAT)

        if self._is_cancelled:
            return SynthesizedAudio(b"", CARTESIA_FORMAT)

        end_time = time.time()
        if first_byte_time is None:
            first_byte_time = end_time

        self._metrics.record_synthesis(
            characters=len(text),
            audio_ms=len(audio) / 16.0,  # 16-bit samples at 8kHz
            first_byte_ms=(first_byte_time - start_time) * 1000,
            total_ms=(end_time - start_time) * 1000,
        )

        return SynthesizedAudio(
            bytes(audio),
            CARTESIA_FORMAT,
            meta={"first_byte_ms": round((first_byte_time - start_time) * 1000, 2)},
        )
