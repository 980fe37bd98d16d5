"""
Turn-taking state machine for one call.

Decides who may speak: whether inbound caller audio is forwarded to STT and
whether outbound agent audio may be sent.

    IDLE -> LISTENING                  stream start
    LISTENING|INTERRUPTED -> SPEAKING  reply starts sending
    SPEAKING -> LISTENING              reply finished or cancelled
    SPEAKING -> INTERRUPTED            newer utterance preempted the agent
    INTERRUPTED -> LISTENING           preempting turn settled without speech
    * -> IDLE                          stream stop / disconnect (terminal)

Invalid transitions are logged and ignored.
"""

from enum import Enum

import structlog

logger = structlog.get_logger(__name__)


class TurnState(str, Enum):
    """Whose turn it is to speak."""
    IDLE = "idle"
    LISTENING = "listening"
    AGENT_SPEAKING = "agent_speaking"
    INTERRUPTED = "cancelled_listening"


_LISTENING_STATES = (TurnState.LISTENING, TurnState.INTERRUPTED)


class TurnTaking:
    """Per-call turn state with an explicit barge-in policy."""

    def __init__(self, barge_in_enabled: bool = False):
        self.barge_in_enabled = barge_in_enabled
        self._state = TurnState.IDLE
        self._stopped = False

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_listening(self) -> bool:
        return self._state in _LISTENING_STATES

    @property
    def is_agent_speaking(self) -> bool:
        return self._state == TurnState.AGENT_SPEAKING

    def should_forward_inbound(self) -> bool:
        """Whether caller audio received now goes to transcription."""
        if self.is_listening:
            return True
        if self._state == TurnState.AGENT_SPEAKING:
            return self.barge_in_enabled
        return False

    def may_send_outbound(self) -> bool:
        return self._state == TurnState.AGENT_SPEAKING

    def start(self) -> bool:
        if self._stopped or self._state != TurnState.IDLE:
            return self._reject("start")
        return self._move(TurnState.LISTENING, "start")

    def begin_speaking(self) -> bool:
        if not self.is_listening:
            return self._reject("begin_speaking")
        return self._move(TurnState.AGENT_SPEAKING, "begin_speaking")

    def finish_speaking(self) -> bool:
        if self._state != TurnState.AGENT_SPEAKING:
            return self._reject("finish_speaking")
        return self._move(TurnState.LISTENING, "finish_speaking")

    def preempt(self) -> bool:
        """A newer utterance cut the agent off."""
        if self._state != TurnState.AGENT_SPEAKING:
            return self._reject("preempt")
        return self._move(TurnState.INTERRUPTED, "preempt")

    def settle(self) -> bool:
        """Return to plain listening after a turn that produced no speech."""
        if self._state == TurnState.LISTENING:
            return True
        if self._state == TurnState.AGENT_SPEAKING:
            return self.finish_speaking()
        if self._state != TurnState.INTERRUPTED:
            return self._reject("settle")
        return self._move(TurnState.LISTENING, "settle")

    def stop(self) -> bool:
        self._stopped = True
        if self._state == TurnState.IDLE:
            return True
        return self._move(TurnState.IDLE, "stop")

    def _move(self, target: TurnState, trigger: str) -> bool:
        logger.debug("Turn state", previous=self._state.value, state=target.value, trigger=trigger)
        self._state = target
        return True

    def _reject(self, trigger: str) -> bool:
        logger.debug("Ignoring turn transition", state=self._state.value, trigger=trigger)
        return False
