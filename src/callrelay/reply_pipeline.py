"""
Reply pipeline: utterance -> LLM -> TTS -> mu-law frames -> paced send.

At most one reply is in flight per call. A newer utterance cancels the current
reply: generation/synthesis calls already on the wire finish and are discarded,
and frame sending stops at the next frame boundary.

The pipeline never touches turn state itself. It reports progress as events
(`ReplyReady`, `ReplyAbandoned`, `ReplyFinished`) that the call session applies
from its single event queue.
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set

import structlog

from src.callrelay.audio import (
    AudioConversionError,
    FrameSequence,
    TWILIO_FRAME_SIZE,
    ULAW_SILENCE,
    convert_to_carrier,
    reframe,
)
from src.callrelay.llm import ConversationMemory
from src.callrelay.transcripts import Utterance

logger = structlog.get_logger(__name__)

SendFrame = Callable[[bytes], Awaitable[bool]]

_reply_ids = itertools.count(1)


class ReplyToken:
    """Cancellation handle for one in-flight reply."""

    def __init__(self, utterance: Utterance):
        self.reply_id = next(_reply_ids)
        self.utterance = utterance
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Idempotent; cancelling a finished reply is a no-op."""
        self._cancelled.set()

    async def wait_cancelled(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds, waking early on cancellation."""
        if self.cancelled:
            return True
        if timeout <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        return f"ReplyToken(reply_id={self.reply_id}, cancelled={self.cancelled})"


@dataclass
class Reply:
    """One agent speech turn, ready to send."""
    text: str
    frames: FrameSequence
    token: ReplyToken

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled


@dataclass(frozen=True)
class ReplyReady:
    token: ReplyToken
    reply: Reply


@dataclass(frozen=True)
class ReplyAbandoned:
    token: ReplyToken
    reason: str


@dataclass(frozen=True)
class ReplyFinished:
    token: ReplyToken
    reply: Reply
    frames_sent: int
    completed: bool


class ReplyPipeline:
    """Sequences one reply per utterance for a single call."""

    def __init__(
        self,
        generator: Any,
        synthesizer: Any,
        memory: ConversationMemory,
        post_event: Callable[[Any], None],
        *,
        memory_enabled: bool = True,
        frame_interval_s: float = 0.020,
        frame_size: int = TWILIO_FRAME_SIZE,
        padding_byte: int = ULAW_SILENCE,
    ):
        self._generator = generator
        self._synthesizer = synthesizer
        self.memory = memory
        self._post = post_event
        self.memory_enabled = memory_enabled
        self.frame_interval_s = frame_interval_s
        self.frame_size = frame_size
        self.padding_byte = padding_byte
        self.extra_context: Optional[str] = None

        self._current: Optional[ReplyToken] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def current(self) -> Optional[ReplyToken]:
        return self._current

    def is_current(self, token: ReplyToken) -> bool:
        return token is self._current and not token.cancelled

    def on_utterance(self, utterance: Utterance) -> ReplyToken:
        """Cancel any reply in flight and start a new one for `utterance`."""
        self.cancel_current(reason="superseded")

        token = ReplyToken(utterance)
        self._current = token
        self._spawn(self._prepare(token))
        logger.info("Reply started", reply_id=token.reply_id, utterance=utterance.text[:80])
        return token

    def cancel_current(self, *, reason: str) -> Optional[ReplyToken]:
        token = self._current
        self._current = None
        if token is not None and not token.cancelled:
            token.cancel()
            logger.info("Reply cancelled", reply_id=token.reply_id, reason=reason)
        return token

    def release(self, token: ReplyToken) -> None:
        """Forget `token` if it is still the in-flight reply."""
        if token is self._current:
            self._current = None

    def complete(self, token: ReplyToken, reply: Reply) -> None:
        """Record a fully sent reply in conversation memory."""
        self.release(token)
        self.memory.append(token.utterance.text, reply.text)

    def start_playback(self, token: ReplyToken, reply: Reply, send_frame: SendFrame) -> None:
        self._spawn(self._play(token, reply, send_frame))

    async def close(self) -> None:
        self.cancel_current(reason="closed")
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _prepare(self, token: ReplyToken) -> None:
        utterance = token.utterance
        memory = self.memory.get_messages() if self.memory_enabled else None

        try:
            text = await self._generator.generate(
                utterance.text,
                memory=memory,
                extra_context=self.extra_context,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Reply generation failed", reply_id=token.reply_id, error=str(e))
            text = ""

        if token.cancelled:
            logger.debug("Discarding stale generation", reply_id=token.reply_id)
            return

        text = (text or "").strip()
        if not text:
            self._post(ReplyAbandoned(token, "empty_generation"))
            return

        try:
            audio = await self._synthesizer.synthesize(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Reply synthesis failed", reply_id=token.reply_id, error=str(e))
            audio = None

        if token.cancelled:
            logger.debug("Discarding stale synthesis", reply_id=token.reply_id)
            return

        if not audio:
            self._post(ReplyAbandoned(token, "empty_synthesis"))
            return

        try:
            carrier_audio = convert_to_carrier(audio.audio_bytes, audio.audio_format)
        except AudioConversionError as e:
            logger.error("Reply audio conversion failed", reply_id=token.reply_id, error=str(e))
            self._post(ReplyAbandoned(token, "conversion_failed"))
            return

        frames = reframe(carrier_audio, self.frame_size, self.padding_byte)
        if not len(frames):
            self._post(ReplyAbandoned(token, "empty_audio"))
            return

        self._post(ReplyReady(token, Reply(text=text, frames=frames, token=token)))

    async def _play(self, token: ReplyToken, reply: Reply, send_frame: SendFrame) -> None:
        loop = asyncio.get_running_loop()
        sent = 0
        next_send_time = loop.time()

        try:
            for frame in reply.frames:
                if token.cancelled:
                    break
                if not await send_frame(frame):
                    break
                sent += 1

                # Pace to real playback time; the cancellation check wakes the wait early.
                next_send_time += self.frame_interval_s
                if await token.wait_cancelled(next_send_time - loop.time()):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Reply playback failed", reply_id=token.reply_id, error=str(e))

        completed = sent == len(reply.frames) and not token.cancelled
        logger.info(
            "Reply playback ended",
            reply_id=token.reply_id,
            frames_sent=sent,
            frames_total=len(reply.frames),
            completed=completed,
        )
        self._post(ReplyFinished(token, reply, sent, completed))
