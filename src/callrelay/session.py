"""Call Session Orchestration.

One CallSession per carrier media-stream connection:
inbound Twilio mu-law -> transcription channel -> (debounced final transcript) ->
reply pipeline (LLM -> TTS -> mu-law frames) -> paced outbound media -> Twilio

Every state change happens on a single processor task that drains the
session's event queue. Carrier messages, transcript events and reply progress
are all enqueued, so turn state, the active reply and the transcript window
are never touched by two tasks at once.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from src.callrelay.config import Config, get_config
from src.callrelay.llm import ConversationMemory, get_reply_generator
from src.callrelay.registry import CallMetadata, CallRegistry
from src.callrelay.reply_pipeline import (
    ReplyAbandoned,
    ReplyFinished,
    ReplyPipeline,
    ReplyReady,
)
from src.callrelay.stt import TranscriptionChannel, TranscriptionResult, create_transcriber
from src.callrelay.transcripts import TranscriptAggregator, Utterance
from src.callrelay.tts import SpeechSynthesizer
from src.callrelay.turn_taking import TurnState, TurnTaking
from src.callrelay.twilio_protocol import (
    CarrierStream,
    StreamConnected,
    StreamDtmf,
    StreamMark,
    StreamMedia,
    StreamStart,
    StreamStop,
    parse_stream_event,
)

logger = structlog.get_logger(__name__)

SendMessage = Callable[[str], Awaitable[None]]
TranscriberFactory = Callable[..., TranscriptionChannel]

_session_ids = itertools.count(1)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class SessionMetrics:
    """Counters for one call."""
    call_sid: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    utterances: int = 0
    replies_completed: int = 0
    replies_abandoned: int = 0
    interruptions: int = 0
    inbound_frames_forwarded: int = 0
    inbound_frames_dropped: int = 0
    outbound_frames: int = 0
    malformed_messages: int = 0
    transcription_reconnects: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "utterances": self.utterances,
            "replies_completed": self.replies_completed,
            "replies_abandoned": self.replies_abandoned,
            "interruptions": self.interruptions,
            "inbound_frames_forwarded": self.inbound_frames_forwarded,
            "inbound_frames_dropped": self.inbound_frames_dropped,
            "outbound_frames": self.outbound_frames,
            "malformed_messages": self.malformed_messages,
            "transcription_reconnects": self.transcription_reconnects,
        }


@dataclass(frozen=True)
class CarrierMessage:
    raw: Any


@dataclass(frozen=True)
class TranscriptReceived:
    result: TranscriptionResult
    channel_generation: int


@dataclass(frozen=True)
class TranscriptionLost:
    channel_generation: int


class CallSession:
    """
    Per-call orchestrator.

    Owns the carrier protocol state, the transcription channel, turn-taking,
    the transcript window, conversation memory and the reply pipeline.
    Sessions share nothing mutable except the call registry.
    """

    def __init__(
        self,
        send_message: SendMessage,
        config: Optional[Config] = None,
        *,
        generator: Optional[Any] = None,
        synthesizer: Optional[Any] = None,
        transcriber_factory: Optional[TranscriberFactory] = None,
        registry: Optional[CallRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the session.

        Args:
            send_message: Async function to send WebSocket messages to Twilio
            config: Optional configuration (uses default if not provided)
            generator: Reply generator shared across calls
            synthesizer: Per-call speech synthesizer
            transcriber_factory: Builds the transcription channel
            registry: Where place-call metadata is claimed on stream start
            clock: Monotonic clock for the transcript window
        """
        if config is None:
            config = get_config()

        self.config = config
        self.session_id = next(_session_ids)
        self._send_message = send_message
        self._carrier = CarrierStream()
        self._turns = TurnTaking(barge_in_enabled=config.barge_in_enabled)
        self._aggregator = TranscriptAggregator(
            debounce_ms=config.transcript_debounce_ms,
            clock=clock,
        )
        self.memory = ConversationMemory(max_turns=config.max_history_turns)
        self._synthesizer = synthesizer or SpeechSynthesizer(config)
        self._transcriber_factory = transcriber_factory or create_transcriber
        self._transcriber: Optional[TranscriptionChannel] = None
        self._transcriber_generation = 0
        self._registry = registry
        self.metadata: Optional[CallMetadata] = None

        self._pipeline = ReplyPipeline(
            generator if generator is not None else get_reply_generator(),
            self._synthesizer,
            self.memory,
            self._post,
            memory_enabled=config.memory_enabled,
            frame_interval_s=config.outbound_frame_interval_ms / 1000.0,
        )

        self._events: asyncio.Queue = asyncio.Queue()
        self._processor_task: Optional[asyncio.Task] = None
        self._state = SessionState.CONNECTING
        self._closed_event = asyncio.Event()
        self._metrics = SessionMetrics()
        self._log = logger.bind(session_id=self.session_id)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == SessionState.CLOSED

    @property
    def turn_state(self) -> TurnState:
        return self._turns.state

    @property
    def call_sid(self) -> str:
        return self._carrier.call_sid

    @property
    def stream_sid(self) -> str:
        return self._carrier.stream_sid

    @property
    def metrics(self) -> SessionMetrics:
        return self._metrics

    @property
    def pipeline(self) -> ReplyPipeline:
        return self._pipeline

    async def start(self) -> bool:
        """
        Open the transcription channel and start the event processor.

        Returns:
            False if transcription could not be opened; the session is closed.
        """
        self._log.info("Starting call session")
        self._processor_task = asyncio.create_task(self._process_events())

        if not await self._open_transcription():
            self._log.error("Transcription unavailable; closing session")
            await self.close(reason="transcription_unavailable")
            return False

        self._log.info("Call session started")
        return True

    async def handle_message(self, raw_message: Any) -> None:
        """Queue one raw carrier message for the processor."""
        self._post(CarrierMessage(raw_message))

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""
        await self._events.join()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def close(self, reason: str = "carrier_disconnect") -> None:
        """
        Release everything the session owns. Safe to call more than once and
        from the processor task itself.
        """
        if self._state == SessionState.CLOSED:
            return

        self._state = SessionState.CLOSED
        self._log.info("Closing call session", reason=reason)

        self._turns.stop()
        try:
            await self._pipeline.close()
        except Exception as e:
            self._log.warning("Reply cleanup failed", error=str(e))
        finally:
            try:
                await self._close_transcription()
            finally:
                try:
                    await self._synthesizer.stop()
                except Exception as e:
                    self._log.warning("Synthesizer cleanup failed", error=str(e))
                if self._registry is not None and self.call_sid:
                    self._registry.release(self.call_sid)
                await self._stop_processor()
                self._closed_event.set()

        self._metrics.end_time = time.time()
        metrics = self._metrics.to_dict()
        metrics["mark_rtt_ms"] = round(self._carrier.avg_mark_rtt_ms, 2)
        self._log.info("Call session closed", reason=reason, metrics=metrics)

    # Event plumbing

    def _post(self, event: Any) -> None:
        if self._state == SessionState.CLOSED:
            return
        self._events.put_nowait(event)

    async def _process_events(self) -> None:
        """Single consumer of the session's event queue."""
        while True:
            event = await self._events.get()
            try:
                await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.error(
                    "Session event failed",
                    event=type(event).__name__,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            finally:
                self._events.task_done()

            if self._state == SessionState.CLOSED:
                break

        self._discard_pending_events()

    async def _stop_processor(self) -> None:
        task = self._processor_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._discard_pending_events()

    def _discard_pending_events(self) -> None:
        while True:
            try:
                self._events.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._events.task_done()

    async def _dispatch(self, event: Any) -> None:
        if self._state == SessionState.CLOSED:
            return

        if isinstance(event, CarrierMessage):
            await self._on_carrier_message(event.raw)
        elif isinstance(event, TranscriptReceived):
            if event.channel_generation == self._transcriber_generation:
                await self._on_transcript(event.result)
        elif isinstance(event, ReplyReady):
            self._on_reply_ready(event)
        elif isinstance(event, ReplyFinished):
            await self._on_reply_finished(event)
        elif isinstance(event, ReplyAbandoned):
            self._on_reply_abandoned(event)
        elif isinstance(event, TranscriptionLost):
            if event.channel_generation == self._transcriber_generation:
                await self._on_transcription_lost()
        else:
            self._log.warning("Unknown session event", event=type(event).__name__)

    # Carrier side

    async def _on_carrier_message(self, raw_message: Any) -> None:
        try:
            event = parse_stream_event(raw_message)
        except ValueError as e:
            self._metrics.malformed_messages += 1
            self._log.warning("Failed to parse Twilio message", error=str(e))
            return

        if isinstance(event, StreamMedia):
            await self._handle_media(event)

        elif isinstance(event, StreamStart):
            self._handle_start(event)

        elif isinstance(event, StreamMark):
            rtt_ms = self._carrier.handle_mark(event)
            if rtt_ms:
                self._log.debug("Twilio mark ack", mark_name=event.name, mark_rtt_ms=round(rtt_ms, 2))

        elif isinstance(event, StreamStop):
            self._handle_stop()

        elif isinstance(event, StreamDtmf):
            self._log.info("DTMF received", digit=event.digit)

        elif isinstance(event, StreamConnected):
            self._log.debug("Twilio connected", protocol=event.protocol)

    def _handle_start(self, event: StreamStart) -> None:
        if self._carrier.started:
            self._log.warning("Ignoring duplicate start", stream_sid=event.stream_sid)
            return

        self._carrier.handle_start(event)
        self._metrics.call_sid = event.call_sid
        self._metrics.stream_sid = event.stream_sid
        self._log = self._log.bind(call_sid=event.call_sid, stream_sid=event.stream_sid)

        metadata = self._registry.claim(event.call_sid) if self._registry is not None else None
        if metadata is None:
            lead_id = str(event.custom_parameters.get("leadId") or "")
            if lead_id:
                metadata = CallMetadata(call_sid=event.call_sid, lead_id=lead_id)
        self.metadata = metadata
        if metadata is not None and metadata.lead_id:
            self._log = self._log.bind(lead_id=metadata.lead_id)
        self._pipeline.extra_context = metadata.as_context() if metadata else None

        self._state = SessionState.ACTIVE
        self._turns.start()
        self._log.info(
            "Call started",
            has_metadata=metadata is not None,
            barge_in_enabled=self.config.barge_in_enabled,
        )

    async def _handle_media(self, event: StreamMedia) -> None:
        if self._state != SessionState.ACTIVE or not self._turns.should_forward_inbound():
            self._metrics.inbound_frames_dropped += 1
            return

        transcriber = self._transcriber
        if transcriber is None or not transcriber.is_connected:
            self._metrics.inbound_frames_dropped += 1
            return

        await transcriber.send_audio(event.payload)
        self._metrics.inbound_frames_forwarded += 1

    def _handle_stop(self) -> None:
        self._carrier.handle_stop()
        self._pipeline.cancel_current(reason="stream_stopped")
        self._turns.stop()
        self._log.info("Stream stop received")

    async def _send_frame(self, frame: bytes) -> bool:
        """Send one outbound frame; False once the carrier can no longer take audio."""
        if self._state != SessionState.ACTIVE or not self._turns.may_send_outbound():
            return False

        message = self._carrier.media_message(frame)
        if not message:
            return False

        await self._send_message(message)
        self._metrics.outbound_frames += 1
        return True

    async def _clear_carrier_audio(self) -> None:
        clear_msg = self._carrier.clear_message()
        if not clear_msg:
            return
        try:
            await self._send_message(clear_msg)
            self._log.info("Twilio clear sent", playback_generation_id=self._carrier.playback_generation_id)
        except Exception as e:
            self._log.warning("Failed to send Twilio clear", error=str(e))

    # Transcription side

    async def _open_transcription(self) -> bool:
        self._transcriber_generation += 1
        generation = self._transcriber_generation

        async def on_transcript(result: TranscriptionResult) -> None:
            self._post(TranscriptReceived(result, generation))

        async def on_closed() -> None:
            self._post(TranscriptionLost(generation))

        transcriber = self._transcriber_factory(on_transcript, on_closed, config=self.config)
        try:
            ok = await transcriber.connect()
        except Exception as e:
            self._log.error("Transcription connect failed", error_type=type(e).__name__, error=str(e))
            ok = False

        if not ok:
            return False

        self._transcriber = transcriber
        return True

    async def _close_transcription(self) -> None:
        transcriber = self._transcriber
        self._transcriber = None
        if transcriber is None:
            return
        try:
            await transcriber.disconnect()
        except Exception as e:
            self._log.warning("Transcription disconnect failed", error=str(e))

    async def _on_transcription_lost(self) -> None:
        await self._close_transcription()

        # Only one reconnect per call
        if self._metrics.transcription_reconnects >= 1:
            self._log.error("Transcription channel lost again; closing session")
            await self.close(reason="transcription_lost")
            return

        self._log.warning("Transcription channel lost; reconnecting")
        if await self._open_transcription():
            self._metrics.transcription_reconnects += 1
            self._log.info("Transcription channel reconnected")
            return

        await self.close(reason="transcription_lost")

    async def _on_transcript(self, result: TranscriptionResult) -> None:
        if self._state != SessionState.ACTIVE or self._turns.state == TurnState.IDLE:
            return

        utterance = self._aggregator.on_transcript_event(result.text, result.is_final)
        if utterance is None:
            return

        self._metrics.utterances += 1
        await self._begin_reply(utterance)

    # Reply side

    async def _begin_reply(self, utterance: Utterance) -> None:
        if self._turns.is_agent_speaking:
            self._pipeline.cancel_current(reason="preempted")
            self._turns.preempt()
            self._metrics.interruptions += 1
            await self._clear_carrier_audio()
            self._log.info("Agent preempted by caller", utterance=utterance.text[:80])

        self._pipeline.on_utterance(utterance)

    def _on_reply_ready(self, event: ReplyReady) -> None:
        if not self._pipeline.is_current(event.token):
            self._log.debug("Discarding stale reply", reply_id=event.token.reply_id)
            return

        if not self._carrier.can_send or not self._turns.begin_speaking():
            self._pipeline.release(event.token)
            self._log.debug("Reply ready but carrier cannot take audio", reply_id=event.token.reply_id)
            return

        self._pipeline.start_playback(event.token, event.reply, self._send_frame)

    async def _on_reply_finished(self, event: ReplyFinished) -> None:
        if not self._pipeline.is_current(event.token):
            return

        if event.completed:
            self._pipeline.complete(event.token, event.reply)
            self._metrics.replies_completed += 1
            mark_msg = self._carrier.mark_message()
            if mark_msg:
                await self._send_message(mark_msg)
        else:
            self._pipeline.release(event.token)

        self._turns.finish_speaking()

    def _on_reply_abandoned(self, event: ReplyAbandoned) -> None:
        if not self._pipeline.is_current(event.token):
            return

        self._pipeline.release(event.token)
        self._metrics.replies_abandoned += 1
        self._turns.settle()
        self._log.warning("Reply abandoned", reply_id=event.token.reply_id, reason=event.reason)


def create_session(send_message: SendMessage, config: Optional[Config] = None, **kwargs: Any) -> CallSession:
    """Build a CallSession wired to the process-wide registry."""
    if "registry" not in kwargs:
        from src.callrelay.registry import get_call_registry

        kwargs["registry"] = get_call_registry()
    return CallSession(send_message, config, **kwargs)
