"""
Run a voice session from the terminal.

Usage:
    python -m voice_session

Requires CREDENTIAL_BROKER_URL and USER_ACCESS_TOKEN. Messages are written
to CONVERSATION_STORE_URL when set, otherwise kept in memory. Ctrl+C ends
the session.
"""
import asyncio
import os
from pathlib import Path

from dotenv import load_dotenv

from logging_setup import get_logger, Component, setup_logging
from .callbacks import SessionCallbacks
from .config import get_config
from .errors import VoiceSessionError
from .session import VoiceSession, describe_error
from .store import InMemoryConversationStore, RestConversationStore

# Local dev convenience; never overrides exported variables.
root = Path(__file__).parent.parent
for name in (".env_local", ".env.local"):
    p = root / name
    if p.exists():
        load_dotenv(p, override=False)

logger = get_logger(Component.VOICE_SESSION)


def _print_line(prefix: str, text: str) -> None:
    print(f"{prefix}: {text}", flush=True)


def _build_store(config):
    if config.conversation_store_url:
        return RestConversationStore(
            config.conversation_store_url,
            api_key=config.conversation_store_key,
            access_token=config.user_access_token,
            timeout_seconds=config.http_timeout_seconds,
        )
    logger.info("CONVERSATION_STORE_URL not set; messages stay in memory")
    return InMemoryConversationStore()


async def main() -> int:
    config = get_config()
    closed = asyncio.Event()

    def on_error(error: BaseException) -> None:
        info = describe_error(error)
        _print_line("error", f"{info['message']} ({info['category']})")

    callbacks = SessionCallbacks(
        on_connect=lambda: _print_line("status", "connected, start talking"),
        on_disconnect=closed.set,
        on_error=on_error,
        on_user_transcript=lambda text, is_final: is_final and _print_line("you", text),
        on_assistant_transcript=lambda text, is_final: is_final and _print_line("assistant", text),
        on_conversation_created=lambda conversation_id: _print_line("conversation", conversation_id),
    )

    session = VoiceSession(config, callbacks=callbacks, store=_build_store(config))
    try:
        await session.start()
    except VoiceSessionError:
        return 1

    try:
        await closed.wait()
    finally:
        await session.stop()
    return 0


def _cli() -> None:
    setup_logging(level=os.getenv("LOG_LEVEL", "INFO"), use_json=True)
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    _cli()
