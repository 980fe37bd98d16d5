#!/usr/bin/env python3
"""
Smoke Test Script

Validates configuration and connectivity without placing a real call.

Checks:
1. Required dependencies import
2. Configuration loads and validates (without printing secrets)
3. Groq model exists via API (when LLM_PROVIDER=groq)
4. FastAPI app serves /health and the TwiML webhook
"""

import asyncio
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def print_header(text: str) -> None:
    """Print a section header."""
    print(f"\n{'=' * 50}")
    print(f" {text}")
    print('=' * 50)


def print_ok(text: str) -> None:
    print(f"  [OK] {text}")


def print_error(text: str) -> None:
    print(f"  [ERR] {text}")


def print_warn(text: str) -> None:
    print(f"  [WARN] {text}")


def check_dependencies() -> bool:
    """Check that required dependencies are importable."""
    print_header("Checking Dependencies")

    dependencies = [
        ("fastapi", "FastAPI"),
        ("uvicorn", "Uvicorn"),
        ("websockets", "WebSockets"),
        ("openai", "OpenAI SDK"),
        ("twilio", "Twilio SDK"),
        ("structlog", "Structlog"),
        ("msgspec", "msgspec"),
        ("pydantic", "Pydantic"),
        ("httpx", "HTTPX"),
        ("numpy", "NumPy"),
        ("audioop", "audioop"),
    ]

    all_ok = True
    for module, name in dependencies:
        try:
            __import__(module)
            print_ok(name)
        except ImportError as e:
            print_error(f"{name}: {e}")
            all_ok = False

    try:
        __import__("uvloop")
        print_ok("uvloop")
    except ImportError:
        print_warn("uvloop: not installed (default asyncio loop will be used)")

    return all_ok


def check_config() -> bool:
    """Load and validate configuration."""
    print_header("Checking Configuration")

    from src.callrelay.config import ConfigError, get_config

    config = get_config()
    try:
        config.validate()
    except ConfigError as e:
        for line in str(e).splitlines():
            print_error(line)
        return False

    print_ok(f"PUBLIC_HOST: {config.public_host}")
    print_ok(f"Stream URL: {config.stream_url}")
    print_ok(f"LLM: {config.llm_provider}")
    print_ok(f"TTS: {config.tts_provider}")
    print_ok(f"Barge-in: {'on' if config.barge_in_enabled else 'off'}")
    if not config.twilio_from_number:
        print_warn("TWILIO_FROM_NUMBER: not set (POST /start-call will fail)")
    return True


async def check_groq_model() -> bool:
    """Validate the Groq model exists."""
    print_header("Validating LLM Model")

    from src.callrelay.config import get_config
    from src.callrelay.llm import validate_groq_model

    config = get_config()
    if config.llm_provider != "groq":
        print_warn(f"LLM_PROVIDER={config.llm_provider}: model listing skipped")
        return True

    try:
        await validate_groq_model(config.groq_api_key, config.groq_model)
    except SystemExit as e:
        print_error(str(e).splitlines()[0])
        return False

    print_ok(f"Model '{config.groq_model}' exists")
    return True


def check_http_endpoints() -> bool:
    """Check /health and /twilio/voice without starting a server."""
    print_header("Testing HTTP Endpoints")

    from fastapi.testclient import TestClient
    from server.app import app

    client = TestClient(app)

    health = client.get("/health")
    if health.status_code != 200 or health.json().get("status") != "healthy":
        print_error(f"/health returned {health.status_code}")
        return False
    print_ok("/health returned healthy")

    twiml = client.post("/twilio/voice")
    if twiml.status_code != 200 or "<Stream" not in twiml.text:
        print_error(f"/twilio/voice returned {twiml.status_code}")
        return False
    print_ok("/twilio/voice returned a Stream TwiML")
    return True


async def main() -> int:
    """Run all smoke tests."""
    print("\n" + "=" * 50)
    print(" CALL RELAY - SMOKE TEST")
    print("=" * 50)

    results = [("Dependencies", check_dependencies())]
    config_ok = check_config()
    results.append(("Configuration", config_ok))
    if config_ok:
        results.append(("LLM Model", await check_groq_model()))
    results.append(("HTTP Endpoints", check_http_endpoints()))

    print_header("Summary")

    all_passed = True
    for name, passed in results:
        if passed:
            print_ok(name)
        else:
            print_error(name)
            all_passed = False

    print()

    if all_passed:
        print("[OK] All checks passed!")
        print("\nNext steps:")
        print("  1. Run 'python -m server.app' to start the server")
        print("  2. Expose the port (e.g. 'ngrok http 10000') and set PUBLIC_HOST")
        print("  3. Point your Twilio number's voice webhook at /twilio/voice")
        print("  4. Or POST {\"phone\": \"+1...\"} to /start-call")
        return 0

    print("[ERR] Some checks failed. Please fix the issues above.")
    return 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
