"""
Configuration management for the call relay.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 10000
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en-US"
    deepgram_endpointing_ms: int = 300

    # LLM Provider (Groq/OpenAI)
    # - Default is Groq; set LLM_PROVIDER=openai + OPENAI_API_KEY/OPENAI_MODEL to use ChatGPT.
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 150
    llm_temperature: float = 0.7
    llm_timeout_seconds: float = 10.0

    # TTS Provider (Cartesia/OpenAI)
    tts_provider: str = "cartesia"  # "cartesia" | "openai"
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_model_id: str = "sonic-english"
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"

    # Agent persona
    agent_name: str = "Ava"
    company_name: str = "our team"

    # Turn-taking policy
    # - barge_in_enabled: keep forwarding caller audio to STT while the agent speaks
    # - memory_enabled: pass the running conversation to the LLM on every turn
    barge_in_enabled: bool = False
    memory_enabled: bool = True
    max_history_turns: int = 10
    transcript_debounce_ms: int = 900
    outbound_frame_interval_ms: int = 20

    # Call registry
    call_registry_ttl_seconds: float = 300.0

    @property
    def stream_url(self) -> str:
        """Get the WebSocket URL for Twilio Media Streams."""
        return f"wss://{self.public_host}/stream"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def voice_webhook_url(self) -> str:
        return f"{self.base_url}/twilio/voice"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        tts = (self.tts_provider or "cartesia").strip().lower()
        if tts not in ("cartesia", "openai"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'cartesia' or 'openai'."
            )
        if tts == "cartesia" and not self.cartesia_api_key:
            missing.append("CARTESIA_API_KEY")
        if tts == "openai" and not self.openai_api_key and "OPENAI_API_KEY" not in missing:
            missing.append("OPENAI_API_KEY")

        if self.transcript_debounce_ms < 0:
            raise ConfigError("TRANSCRIPT_DEBOUNCE_MS must be >= 0")
        if self.outbound_frame_interval_ms < 0:
            raise ConfigError("OUTBOUND_FRAME_INTERVAL_MS must be >= 0")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            llm_provider=self.llm_provider,
            llm_model=self.openai_model if self.llm_provider == "openai" else self.groq_model,
            tts_provider=self.tts_provider,
            agent_name=self.agent_name,
            barge_in_enabled=self.barge_in_enabled,
            memory_enabled=self.memory_enabled,
            transcript_debounce_ms=self.transcript_debounce_ms,
            outbound_frame_interval_ms=self.outbound_frame_interval_ms,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            twilio_from_number_set=bool(self.twilio_from_number),
            deepgram_key_set=bool(self.deepgram_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 10000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 150),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        llm_timeout_seconds=_get_float("LLM_TIMEOUT_SECONDS", 10.0),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "cartesia").strip().lower(),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),
        cartesia_model_id=os.getenv("CARTESIA_MODEL_ID", "sonic-english"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),

        # Agent persona
        agent_name=os.getenv("AGENT_NAME", "Ava"),
        company_name=os.getenv("COMPANY_NAME", "our team"),

        # Turn-taking policy
        barge_in_enabled=_get_bool("BARGE_IN_ENABLED", False),
        memory_enabled=_get_bool("MEMORY_ENABLED", True),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 10),
        transcript_debounce_ms=_get_int("TRANSCRIPT_DEBOUNCE_MS", 900),
        outbound_frame_interval_ms=_get_int("OUTBOUND_FRAME_INTERVAL_MS", 20),

        # Call registry
        call_registry_ttl_seconds=_get_float("CALL_REGISTRY_TTL_SECONDS", 300.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
