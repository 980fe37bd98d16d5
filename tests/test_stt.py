"""
Tests for Deepgram message handling.
"""

import json
from unittest.mock import AsyncMock

import pytest

from src.callrelay.config import get_config
from src.callrelay.stt import DeepgramSTT, TranscriptionResult, create_transcriber


def _results(transcript: str, is_final: bool, speech_final: bool = False) -> dict:
    return {
        "type": "Results",
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": transcript, "confidence": 0.93}]},
    }


class FakeDeepgramSocket:
    """Async-iterable stand-in for the Deepgram WebSocket."""

    def __init__(self, messages):
        self._messages = list(messages)
        self.sent = []

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        return None


class TestHandleMessage:
    """Tests for DeepgramSTT._handle_message()."""

    @pytest.mark.asyncio
    async def test_final_result_reported(self):
        on_transcript = AsyncMock()
        stt = DeepgramSTT(on_transcript=on_transcript, config=get_config())

        await stt._handle_message(_results("book a table", True, speech_final=True))

        result = on_transcript.await_args.args[0]
        assert isinstance(result, TranscriptionResult)
        assert result.text == "book a table"
        assert result.is_final is True
        assert result.speech_final is True
        assert result.confidence == pytest.approx(0.93)

    @pytest.mark.asyncio
    async def test_interim_result_reported_as_partial(self):
        on_transcript = AsyncMock()
        stt = DeepgramSTT(on_transcript=on_transcript, config=get_config())

        await stt._handle_message(_results("book a", False))

        assert on_transcript.await_args.args[0].is_final is False

    @pytest.mark.asyncio
    async def test_empty_transcript_ignored(self):
        on_transcript = AsyncMock()
        stt = DeepgramSTT(on_transcript=on_transcript, config=get_config())

        await stt._handle_message(_results("", True))
        await stt._handle_message({"type": "Results", "channel": {"alternatives": []}})

        on_transcript.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_utterance_end_replays_last_final(self):
        on_transcript = AsyncMock()
        stt = DeepgramSTT(on_transcript=on_transcript, config=get_config())

        await stt._handle_message(_results("yes please", True))
        await stt._handle_message({"type": "UtteranceEnd"})

        assert on_transcript.await_count == 2
        replay = on_transcript.await_args_list[1].args[0]
        assert replay.text == "yes please"
        assert replay.is_final is True

        # Only once per final
        await stt._handle_message({"type": "UtteranceEnd"})
        assert on_transcript.await_count == 2

    @pytest.mark.asyncio
    async def test_unknown_types_ignored(self):
        on_transcript = AsyncMock()
        stt = DeepgramSTT(on_transcript=on_transcript, config=get_config())

        await stt._handle_message({"type": "Metadata"})
        await stt._handle_message({"type": "SpeechStarted"})
        await stt._handle_message({"type": 7})

        on_transcript.assert_not_awaited()


class TestReceiveLoop:
    """Tests for the receive loop and close notification."""

    @pytest.mark.asyncio
    async def test_malformed_messages_skipped(self):
        on_transcript = AsyncMock()
        on_closed = AsyncMock()
        stt = DeepgramSTT(on_transcript=on_transcript, on_closed=on_closed, config=get_config())
        stt._ws = FakeDeepgramSocket([
            "not json",
            "[1, 2]",
            json.dumps(_results("hello", True)),
        ])

        await stt._receive_loop()

        assert on_transcript.await_count == 1
        assert on_transcript.await_args.args[0].text == "hello"

    @pytest.mark.asyncio
    async def test_unexpected_close_reported(self):
        on_closed = AsyncMock()
        stt = DeepgramSTT(on_closed=on_closed, config=get_config())
        stt._ws = FakeDeepgramSocket([])
        stt._is_connected = True

        await stt._receive_loop()

        on_closed.assert_awaited_once()
        assert stt.is_connected is False

    @pytest.mark.asyncio
    async def test_requested_close_not_reported(self):
        on_closed = AsyncMock()
        stt = DeepgramSTT(on_closed=on_closed, config=get_config())
        stt._ws = FakeDeepgramSocket([])
        stt._closing = True

        await stt._receive_loop()

        on_closed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disconnect_sends_close_stream(self):
        stt = DeepgramSTT(config=get_config())
        ws = FakeDeepgramSocket([])
        stt._ws = ws
        stt._is_connected = True

        await stt.disconnect()

        assert json.loads(ws.sent[-1]) == {"type": "CloseStream"}
        assert stt.is_connected is False


class TestListenUrl:
    def test_mulaw_8k_parameters(self):
        stt = DeepgramSTT(config=get_config())
        url = stt._listen_url("nova-2")

        assert url.startswith("wss://api.deepgram.com/v1/listen?")
        assert "encoding=mulaw" in url
        assert "sample_rate=8000" in url
        assert "interim_results=true" in url
        assert "model=nova-2" in url

    def test_factory_builds_deepgram(self):
        channel = create_transcriber(AsyncMock(), AsyncMock(), config=get_config())
        assert isinstance(channel, DeepgramSTT)
        assert channel.is_connected is False
