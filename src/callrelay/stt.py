"""
Deepgram Speech-to-Text streaming client.

- Accepts mu-law 8kHz directly from Twilio (no conversion needed)
- Interim results are reported with is_final=False
- UtteranceEnd replays the last final segment so end-of-speech is never missed;
  the transcript aggregator collapses the duplicate
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Callable, Awaitable, Any
from urllib.parse import urlencode

import structlog
import websockets

from src.callrelay.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

TranscriptCallback = Callable[["TranscriptionResult"], Awaitable[None]]
ClosedCallback = Callable[[], Awaitable[None]]


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    is_final: bool
    confidence: float = 0.0
    speech_final: bool = False
    timestamp: float = field(default_factory=time.time)
    latency_ms: float = 0.0


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    total_transcripts: int = 0
    final_transcripts: int = 0
    avg_latency_ms: float = 0.0

    def record_transcript(self, is_final: bool, latency_ms: float) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1
        self.avg_latency_ms = (
            (self.avg_latency_ms * (self.total_transcripts - 1) + latency_ms)
            / self.total_transcripts
        )


class TranscriptionChannel(ABC):
    """
    A streaming transcription connection owned by one call session.

    Implementations report results through `on_transcript` and call `on_closed`
    when the connection drops without `disconnect()` having been requested.
    """

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def connect(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def send_audio(self, audio_bytes: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    async def disconnect(self) -> None:
        raise NotImplementedError


class DeepgramSTT(TranscriptionChannel):
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(
        self,
        on_transcript: Optional[TranscriptCallback] = None,
        on_closed: Optional[ClosedCallback] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_transcript = on_transcript
        self._on_closed = on_closed
        self._ws = None
        self._is_connected = False
        self._closing = False
        self._metrics = STTMetrics()
        self._last_audio_time: float = 0.0
        self._current_transcript = ""
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    def _listen_url(self, model: str) -> str:
        params = {
            "model": model,
            "encoding": "mulaw",
            "sample_rate": 8000,
            "channels": 1,
            "punctuate": "true",
            "smart_format": "true",
            "interim_results": "true",
            "vad_events": "true",
            "endpointing": self.config.deepgram_endpointing_ms,
            "utterance_end_ms": 1000,
            "language": self.config.deepgram_language,
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}

        # Model availability varies by account; fall back to nova-2.
        models = [self.config.deepgram_model]
        if "nova-2" not in models:
            models.append("nova-2")

        last_error: Optional[BaseException] = None
        for model in models:
            try:
                logger.info("Connecting to Deepgram", model=model)
                self._ws = await websockets.connect(
                    self._listen_url(model),
                    additional_headers=headers,
                    open_timeout=10,
                )
                logger.info("Deepgram STT connected", model=model)
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    "Deepgram connection attempt failed",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                self._ws = None

        if not self._ws:
            logger.error(
                "Deepgram connection failed",
                error_type=type(last_error).__name__ if last_error else "unknown",
            )
            return False

        self._is_connected = True
        self._closing = False
        self._receive_task = asyncio.create_task(self._receive_loop())
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram."""
        self._closing = True
        self._is_connected = False

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
        self._receive_task = None

        if self._ws:
            try:
                # Ask Deepgram to flush and close the stream cleanly.
                await self._ws.send(json.dumps({"type": "CloseStream"}))
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws or not audio_bytes:
            return

        try:
            self._last_audio_time = time.time()
            self._metrics.total_audio_ms += len(audio_bytes) / 8.0  # mu-law 8kHz
            await self._ws.send(audio_bytes)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning("Deepgram connection closed while sending", error=str(e))
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except (json.JSONDecodeError, TypeError):
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                if not isinstance(data, dict):
                    logger.warning("Unexpected Deepgram message shape", type=type(data).__name__)
                    continue
                try:
                    await self._handle_message(data)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Deepgram connection closed", code=getattr(e, "code", None))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

        if not self._closing and self._on_closed:
            await self._on_closed()

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            if not alternatives:
                return

            transcript = alternatives[0].get("transcript", "")
            if not transcript:
                return

            is_final = bool(data.get("is_final", False))
            speech_final = bool(data.get("speech_final", False))
            if is_final:
                self._current_transcript = transcript

            latency_ms = 0.0
            if self._last_audio_time > 0:
                latency_ms = (time.time() - self._last_audio_time) * 1000

            self._metrics.record_transcript(is_final, latency_ms)

            logger.debug(
                "STT transcript",
                text=transcript[:50],
                is_final=is_final,
                speech_final=speech_final,
            )

            if self._on_transcript:
                await self._on_transcript(
                    TranscriptionResult(
                        text=transcript,
                        is_final=is_final,
                        confidence=float(alternatives[0].get("confidence", 0.0) or 0.0),
                        speech_final=speech_final,
                        latency_ms=latency_ms,
                    )
                )

        elif msg_type_norm == "utteranceend":
            logger.debug("Utterance end detected")
            if self._current_transcript and self._on_transcript:
                await self._on_transcript(
                    TranscriptionResult(
                        text=self._current_transcript,
                        is_final=True,
                        speech_final=True,
                    )
                )
            self._current_transcript = ""

        elif msg_type_norm == "speechstarted":
            logger.debug("STT speech started")

        elif msg_type_norm == "error":
            logger.error(
                "Deepgram error",
                error=data.get("message") or data.get("description", "Unknown"),
            )


def create_transcriber(
    on_transcript: TranscriptCallback,
    on_closed: ClosedCallback,
    config: Optional[Any] = None,
) -> TranscriptionChannel:
    """Default transcription factory used by call sessions."""
    return DeepgramSTT(on_transcript=on_transcript, on_closed=on_closed, config=config)
