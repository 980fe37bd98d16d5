"""
Tests for transcript aggregation and debouncing.
"""

import pytest

from src.callrelay.transcripts import TranscriptAggregator, Utterance, normalize_transcript


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def aggregator(clock):
    return TranscriptAggregator(debounce_ms=900, clock=clock)


class TestNormalize:
    def test_case_punctuation_and_spaces(self):
        assert normalize_transcript("  Hello,   World!  ") == "hello world"

    def test_unicode_folding(self):
        assert normalize_transcript("STRASSE") == normalize_transcript("straße")


class TestAggregator:
    """Tests for TranscriptAggregator."""

    def test_final_produces_utterance(self, aggregator):
        utterance = aggregator.on_transcript_event("I'd like a quote", True)

        assert isinstance(utterance, Utterance)
        assert utterance.text == "I'd like a quote"
        assert utterance.is_final is True

    def test_partial_produces_nothing(self, aggregator):
        assert aggregator.on_transcript_event("I'd like", False) is None

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_blank_final_ignored(self, aggregator, text):
        assert aggregator.on_transcript_event(text, True) is None

    def test_text_is_trimmed(self, aggregator):
        assert aggregator.on_transcript_event("  yes please  ", True).text == "yes please"

    def test_duplicate_within_window_dropped(self, aggregator, clock):
        assert aggregator.on_transcript_event("Yes.", True) is not None
        clock.advance_ms(200)

        assert aggregator.on_transcript_event("yes", True) is None
        assert aggregator.dropped_duplicates == 1

    def test_duplicate_after_window_emitted(self, aggregator, clock):
        aggregator.on_transcript_event("yes", True)
        clock.advance_ms(901)

        assert aggregator.on_transcript_event("yes", True) is not None

    def test_different_text_within_window_emitted(self, aggregator, clock):
        aggregator.on_transcript_event("yes", True)
        clock.advance_ms(100)

        assert aggregator.on_transcript_event("no", True) is not None

    def test_window_measured_from_last_emitted(self, aggregator, clock):
        aggregator.on_transcript_event("hello", True)
        clock.advance_ms(500)
        assert aggregator.on_transcript_event("hello", True) is None
        clock.advance_ms(500)
        # 1000ms since the emitted one, even though only 500ms since the drop
        assert aggregator.on_transcript_event("hello", True) is not None

    def test_zero_debounce_never_drops(self, clock):
        aggregator = TranscriptAggregator(debounce_ms=0, clock=clock)
        assert aggregator.on_transcript_event("hi", True) is not None
        assert aggregator.on_transcript_event("hi", True) is not None

    @pytest.mark.parametrize("text,is_final", [(None, True), (42, True), ("hi", "yes"), ("hi", None)])
    def test_malformed_event_dropped(self, aggregator, text, is_final):
        assert aggregator.on_transcript_event(text, is_final) is None
