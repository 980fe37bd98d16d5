"""
Audio conversion and framing utilities for the call relay.

Twilio Media Streams carry 8kHz mono mu-law in both directions:
- Inbound caller audio is sent to Deepgram unchanged (encoding=mulaw&sample_rate=8000)
- Synthesized speech is converted to 8kHz mu-law, then cut into 20ms frames

Framing is a pure transform; pacing the frames onto the wire is the session's job.
"""

import audioop
import io
import wave
from dataclasses import dataclass
from typing import Iterator

import structlog

logger = structlog.get_logger(__name__)

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = 0xFF  # mu-law encoding of zero amplitude


class AudioConversionError(ValueError):
    """Raised when audio cannot be decoded or converted to the carrier format."""


@dataclass(frozen=True)
class AudioFormat:
    """Describes a raw audio buffer."""
    encoding: str  # "mulaw" | "pcm_s16le" | "pcm_f32le"
    sample_rate: int
    channels: int = 1
    container: str = "raw"  # "raw" | "wav"


CARRIER_FORMAT = AudioFormat(encoding="mulaw", sample_rate=TWILIO_SAMPLE_RATE, channels=1)


class FrameSequence:
    """
    Lazy, restartable sequence of fixed-size frames over a byte buffer.

    Every iteration starts from the beginning of the buffer. The final frame is
    padded with `padding_byte` when the buffer is not an exact multiple of
    `frame_size`.
    """

    def __init__(self, audio_bytes: bytes, frame_size: int, padding_byte: int = ULAW_SILENCE):
        if frame_size <= 0:
            raise ValueError("frame_size must be positive")
        self._audio = bytes(audio_bytes or b"")
        self.frame_size = frame_size
        self._padding = bytes([padding_byte & 0xFF])

    @property
    def audio(self) -> bytes:
        return self._audio

    @property
    def padding(self) -> int:
        """Number of padding bytes appended to the final frame."""
        remainder = len(self._audio) % self.frame_size
        return 0 if remainder == 0 else self.frame_size - remainder

    def __len__(self) -> int:
        return -(-len(self._audio) // self.frame_size)

    def __iter__(self) -> Iterator[bytes]:
        for i in range(0, len(self._audio), self.frame_size):
            frame = self._audio[i:i + self.frame_size]
            if len(frame) < self.frame_size:
                frame = frame + self._padding * (self.frame_size - len(frame))
            yield frame


def reframe(
    audio_bytes: bytes,
    frame_size: int = TWILIO_FRAME_SIZE,
    padding_byte: int = ULAW_SILENCE,
) -> FrameSequence:
    """
    Cut carrier-format audio into fixed-size frames.

    For Twilio, 20ms frames = 160 bytes of mu-law at 8kHz, padded with mu-law silence.

    Args:
        audio_bytes: Audio already in the carrier codec
        frame_size: Size of each frame in bytes
        padding_byte: Byte used to pad the final frame

    Returns:
        A FrameSequence; empty input yields no frames
    """
    return FrameSequence(audio_bytes, frame_size, padding_byte)


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law audio to linear PCM 16-bit.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes

    Returns:
        Linear PCM 16-bit bytes at the same rate
    """
    if not ulaw_bytes:
        return b""

    return audioop.ulaw2lin(ulaw_bytes, 2)


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit bytes

    Returns:
        Mu-law encoded bytes
    """
    if not pcm_bytes:
        return b""

    return audioop.lin2ulaw(pcm_bytes, 2)


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate` using `audioop.ratecv`.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes
    converted, _ = audioop.ratecv(pcm_bytes, 2, 1, int(source_rate), int(target_rate), None)
    return converted


def float32_to_linear16(pcm_bytes: bytes) -> bytes:
    """Convert 32-bit float PCM in [-1.0, 1.0] to 16-bit PCM."""
    if not pcm_bytes:
        return b""

    import numpy as np  # Local import (optional code path)

    if len(pcm_bytes) % 4:
        raise AudioConversionError("float32 PCM length is not a multiple of 4 bytes")
    samples = np.frombuffer(pcm_bytes, dtype=np.float32)
    samples = np.clip(samples * 32767, -32768, 32767).astype(np.int16)
    return samples.tobytes()


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises AudioConversionError.
    """
    if not wav_bytes:
        raise AudioConversionError("Empty WAV")

    try:
        with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise AudioConversionError(f"Invalid WAV: {e}") from e

    if sample_width != 2:
        raise AudioConversionError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        mono = audioop.tomono(frames, 2, 0.5, 0.5)
        return int(sample_rate), mono

    raise AudioConversionError(f"Unsupported WAV channel count: {channels}")


def _to_mono_pcm16(pcm_bytes: bytes, fmt: AudioFormat) -> tuple[int, bytes]:
    if fmt.container == "wav":
        return read_wav_mono_pcm16(pcm_bytes)

    if fmt.container != "raw":
        raise AudioConversionError(f"Unsupported container: {fmt.container}")

    if fmt.encoding == "mulaw":
        pcm = ulaw_to_linear16(pcm_bytes)
    elif fmt.encoding == "pcm_s16le":
        pcm = pcm_bytes
    elif fmt.encoding == "pcm_f32le":
        pcm = float32_to_linear16(pcm_bytes)
    else:
        raise AudioConversionError(f"Unsupported encoding: {fmt.encoding}")

    if fmt.channels == 2:
        pcm = audioop.tomono(pcm, 2, 0.5, 0.5)
    elif fmt.channels != 1:
        raise AudioConversionError(f"Unsupported channel count: {fmt.channels}")

    return fmt.sample_rate, pcm


def convert_to_carrier(audio_bytes: bytes, fmt: AudioFormat) -> bytes:
    """
    Convert synthesized audio to Twilio-ready 8kHz mono mu-law.

    Mu-law at 8kHz mono passes through untouched; everything else is decoded to
    PCM16, downmixed, resampled and re-encoded.

    Raises:
        AudioConversionError: If the audio cannot be decoded
    """
    if not audio_bytes:
        return b""

    if fmt == CARRIER_FORMAT:
        return audio_bytes

    try:
        sample_rate, pcm = _to_mono_pcm16(audio_bytes, fmt)
        if sample_rate != TWILIO_SAMPLE_RATE:
            logger.debug(
                "Resampling synthesized audio",
                source_rate=sample_rate,
                target_rate=TWILIO_SAMPLE_RATE,
            )
            pcm = resample_pcm16(pcm, sample_rate, TWILIO_SAMPLE_RATE)
        return linear16_to_ulaw(pcm)
    except audioop.error as e:
        raise AudioConversionError(str(e)) from e
