"""
Twilio Media Streams wire format.

Inbound frames are decoded straight into msgspec Structs, tagged on the
`event` field. Outbound media, mark and clear messages are encoded from
Structs as well; msgspec handles the base64 payloads both ways.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

OUTBOUND_TRACK = "outbound"
MAX_RTT_SAMPLES = 20


# Inbound

class StartMetadata(msgspec.Struct, rename="camel"):
    stream_sid: str = ""
    call_sid: str = ""
    custom_parameters: Dict[str, Any] = {}


class MediaChunk(msgspec.Struct):
    payload: bytes = b""
    track: str = "inbound"
    chunk: Union[int, str] = 0
    timestamp: Union[int, str] = ""


class MarkLabel(msgspec.Struct):
    name: str = ""


class DtmfDigit(msgspec.Struct):
    digit: str = ""
    track: str = ""


class StreamConnected(msgspec.Struct, tag_field="event", tag="connected"):
    protocol: str = ""
    version: str = ""


class StreamStart(msgspec.Struct, tag_field="event", tag="start", rename="camel"):
    stream_sid: str = ""
    start: StartMetadata = msgspec.field(default_factory=StartMetadata)

    def __post_init__(self):
        # Older payloads only carry the SID inside `start`
        if not self.stream_sid:
            self.stream_sid = self.start.stream_sid

    @property
    def call_sid(self) -> str:
        return self.start.call_sid

    @property
    def custom_parameters(self) -> Dict[str, Any]:
        return self.start.custom_parameters


class StreamMedia(msgspec.Struct, tag_field="event", tag="media", rename="camel"):
    stream_sid: str = ""
    media: MediaChunk = msgspec.field(default_factory=MediaChunk)

    @property
    def payload(self) -> bytes:
        return self.media.payload


class StreamMark(msgspec.Struct, tag_field="event", tag="mark", rename="camel"):
    stream_sid: str = ""
    mark: MarkLabel = msgspec.field(default_factory=MarkLabel)

    @property
    def name(self) -> str:
        return self.mark.name


class StreamDtmf(msgspec.Struct, tag_field="event", tag="dtmf", rename="camel"):
    stream_sid: str = ""
    dtmf: DtmfDigit = msgspec.field(default_factory=DtmfDigit)

    @property
    def digit(self) -> str:
        return self.dtmf.digit


class StreamStop(msgspec.Struct, tag_field="event", tag="stop", rename="camel"):
    stream_sid: str = ""


StreamEvent = Union[StreamConnected, StreamStart, StreamMedia, StreamMark, StreamDtmf, StreamStop]

_decoder = msgspec.json.Decoder(StreamEvent)


def parse_stream_event(raw_message: Union[str, bytes]) -> StreamEvent:
    """
    Decode one Twilio WebSocket frame.

    Raises:
        ValueError: malformed JSON, an unknown `event`, or a field of the wrong type
    """
    try:
        return _decoder.decode(raw_message)
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid stream event: {e}") from e
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e


# Outbound

class _OutboundAudio(msgspec.Struct):
    payload: bytes
    track: str = OUTBOUND_TRACK


class _MediaMessage(msgspec.Struct, tag_field="event", tag="media", rename="camel"):
    stream_sid: str
    media: _OutboundAudio


class _MarkMessage(msgspec.Struct, tag_field="event", tag="mark", rename="camel"):
    stream_sid: str
    mark: MarkLabel


class _ClearMessage(msgspec.Struct, tag_field="event", tag="clear", rename="camel"):
    stream_sid: str


_encoder = msgspec.json.Encoder()


def _encode(message: msgspec.Struct) -> str:
    return _encoder.encode(message).decode("utf-8")


@dataclass
class StreamState:
    """Carrier-side state of one started stream."""
    stream_sid: str
    call_sid: str = ""
    is_active: bool = True
    playback_generation_id: int = 0
    mark_sequence: int = 0
    pending_marks: Dict[str, float] = field(default_factory=dict)
    mark_rtt_samples: List[float] = field(default_factory=list)

    @property
    def avg_mark_rtt_ms(self) -> float:
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)


class CarrierStream:
    """
    The carrier end of one call.

    Knows the stream SID once `start` arrives and builds every outbound
    message. Builders return "" while there is no active stream, so audio is
    never addressed to an unknown stream.

    Marks are named `g{generation}_m{seq}`. A `clear` bumps the generation,
    which makes acknowledgements for marks sent before it stale.
    """

    def __init__(self):
        self.state: Optional[StreamState] = None

    @property
    def started(self) -> bool:
        return self.state is not None

    @property
    def stream_sid(self) -> str:
        return self.state.stream_sid if self.state else ""

    @property
    def call_sid(self) -> str:
        return self.state.call_sid if self.state else ""

    @property
    def can_send(self) -> bool:
        return self.state is not None and self.state.is_active and bool(self.state.stream_sid)

    @property
    def avg_mark_rtt_ms(self) -> float:
        return self.state.avg_mark_rtt_ms if self.state else 0.0

    def handle_start(self, event: StreamStart) -> None:
        self.state = StreamState(stream_sid=event.stream_sid, call_sid=event.call_sid)
        logger.info("Stream started", stream_sid=event.stream_sid, call_sid=event.call_sid)

    def handle_stop(self) -> None:
        if self.state:
            self.state.is_active = False
            logger.info("Stream stopped", stream_sid=self.state.stream_sid)

    def handle_mark(self, event: StreamMark) -> float:
        """Record a mark acknowledgement; returns its RTT in ms, 0 if unknown or stale."""
        if not self.state:
            return 0.0

        generation = _mark_generation(event.name)
        if generation is not None and generation != self.state.playback_generation_id:
            logger.debug("Ignoring stale mark", mark_name=event.name, mark_generation=generation)
            return 0.0

        sent_at = self.state.pending_marks.pop(event.name, None)
        if sent_at is None:
            return 0.0

        rtt_ms = (time.time() - sent_at) * 1000
        samples = self.state.mark_rtt_samples
        samples.append(rtt_ms)
        del samples[:-MAX_RTT_SAMPLES]
        return rtt_ms

    def media_message(self, frame: bytes) -> str:
        if not self.can_send:
            return ""
        return _encode(_MediaMessage(self.state.stream_sid, _OutboundAudio(frame)))

    def mark_message(self) -> str:
        if not self.can_send:
            return ""
        state = self.state
        state.mark_sequence += 1
        name = f"g{state.playback_generation_id}_m{state.mark_sequence}"
        state.pending_marks[name] = time.time()
        return _encode(_MarkMessage(state.stream_sid, MarkLabel(name)))

    def clear_message(self) -> str:
        """Bump the playback generation and build a `clear`."""
        if not self.state:
            return ""
        self.state.playback_generation_id += 1
        self.state.mark_sequence = 0
        self.state.pending_marks.clear()
        if not self.can_send:
            return ""
        return _encode(_ClearMessage(self.state.stream_sid))

    @property
    def playback_generation_id(self) -> int:
        return self.state.playback_generation_id if self.state else 0


def _mark_generation(name: str) -> Optional[int]:
    """Generation from a `g{gen}_m{seq}` mark name, None for any other name."""
    head, sep, _ = name.partition("_")
    if not sep or not head.startswith("g"):
        return None
    try:
        return int(head[1:])
    except ValueError:
        return None
