"""
Reply generation over an OpenAI-compatible chat API (Groq or OpenAI).

Provides:
- Startup model validation (Groq)
- Bounded per-call conversation memory
- A single `generate()` call that never raises: failures become an empty reply
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

import httpx
import structlog
from openai import AsyncOpenAI

from src.callrelay.config import get_config

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"


@dataclass
class ConversationTurn:
    """One caller utterance and the agent reply that answered it."""
    utterance: str
    reply: str
    timestamp: float = field(default_factory=time.time)


class ConversationMemory:
    """Ordered log of utterance/reply pairs with a rolling window."""

    def __init__(self, max_turns: int = 10):
        self.max_turns = max(1, max_turns)
        self._turns: List[ConversationTurn] = []

    def append(self, utterance: str, reply: str) -> None:
        self._turns.append(ConversationTurn(utterance=utterance, reply=reply))
        if len(self._turns) > self.max_turns:
            self._turns = self._turns[-self.max_turns:]

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def get_messages(self) -> List[Dict[str, str]]:
        """Get the log in OpenAI chat format."""
        messages: List[Dict[str, str]] = []
        for turn in self._turns:
            messages.append({"role": "user", "content": turn.utterance})
            messages.append({"role": "assistant", "content": turn.reply})
        return messages

    def __len__(self) -> int:
        return len(self._turns)


def get_system_prompt(config: Optional[Any] = None) -> str:
    """
    Get the system prompt for the voice agent.

    This defines the agent's persona and behavior guidelines.
    """
    if config is None:
        config = get_config()

    return f"""You are {config.agent_name}, a friendly and helpful phone assistant for {config.company_name}.

CORE BEHAVIORS:
- Be conversational and natural - you're on a phone call
- Keep responses concise (1-2 sentences typically) - this is spoken audio
- Be warm and professional
- If you don't understand something, ask for clarification

PHONE CALL GUIDELINES:
- Avoid lists, markdown, emojis or anything that cannot be spoken
- Use simple, clear language and contractions (I'm, you're, we'll)
- Start responses directly - no "Sure!" or "Of course!"
- Be patient with interruptions - they're normal in phone calls"""


async def validate_groq_model(
    api_key: str,
    model_name: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """
    Validate that the configured Groq model exists.

    Calls GET https://api.groq.com/openai/v1/models to check.

    Raises:
        SystemExit: If model doesn't exist (fail fast)
    """
    logger.info("Validating Groq model", model=model_name)

    async with httpx.AsyncClient(transport=transport) as client:
        try:
            response = await client.get(
                f"{GROQ_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to Groq API", error=str(e))
            raise SystemExit(
                f"Failed to connect to Groq API: {e}\n"
                "Check your network connection and GROQ_API_KEY."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch Groq models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate Groq model. API returned status {response.status_code}. "
            "Check your GROQ_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(str(m) for m in model_ids)[:10])
        logger.error(
            "Groq model not found",
            requested_model=model_name,
            available_models=available,
        )
        raise SystemExit(
            f"GROQ_MODEL '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update GROQ_MODEL in your .env file."
        )

    logger.info("Groq model validated successfully", model=model_name)
    return True


class ReplyGenerator:
    """
    Chat-completions client producing one spoken reply per utterance.

    Uses the OpenAI SDK for both providers; Groq is reached through its
    OpenAI-compatible base URL.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.provider = (config.llm_provider or "groq").strip().lower()

        if self.provider == "openai":
            self.model = config.openai_model
            api_key, base_url = config.openai_api_key, None
        else:
            self.model = config.groq_model
            api_key, base_url = config.groq_api_key, GROQ_BASE_URL

        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=config.llm_timeout_seconds,
            max_retries=0,
        )

    async def generate(
        self,
        text: str,
        memory: Optional[List[Dict[str, str]]] = None,
        extra_context: Optional[str] = None,
    ) -> str:
        """
        Generate a reply to one caller utterance.

        Args:
            text: The caller's utterance
            memory: Prior turns in OpenAI chat format, or None to omit
            extra_context: Optional extra system context (e.g., lead details)

        Returns:
            The reply text, or "" when nothing usable was produced
        """
        messages = [{"role": "system", "content": get_system_prompt(self.config)}]
        if extra_context:
            messages.append({"role": "system", "content": extra_context})
        if memory:
            messages.extend(memory)
        messages.append({"role": "user", "content": text})

        started = time.time()
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.config.llm_max_tokens,
                temperature=self.config.llm_temperature,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "LLM generation failed",
                provider=self.provider,
                error_type=type(e).__name__,
                error=str(e),
            )
            return ""

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        reply = (content or "").strip()

        logger.info(
            "LLM reply generated",
            provider=self.provider,
            model=self.model,
            total_ms=round((time.time() - started) * 1000, 2),
            chars=len(reply),
        )
        return reply

    async def close(self) -> None:
        await self._client.close()


async def initialize_llm(config: Optional[Any] = None) -> None:
    """Validate the LLM model at startup (Groq only; OpenAI models are not listed per account)."""
    if config is None:
        config = get_config()
    if (config.llm_provider or "groq").strip().lower() == "groq":
        await validate_groq_model(config.groq_api_key, config.groq_model)


# Singleton instance
_generator_instance: Optional[ReplyGenerator] = None


def get_reply_generator() -> ReplyGenerator:
    """Get or create the ReplyGenerator singleton."""
    global _generator_instance

    if _generator_instance is None:
        _generator_instance = ReplyGenerator()

    return _generator_instance
