"""
Command-line interface for II-Code-Agent.
"""

import argparse
import asyncio
import signal
import sys
import uuid

import structlog

from .agent.compaction import CompactResult
from .agent.core import Agent
from .config import get_settings
from .errors import AuthError, RetryExhaustedError, TransportError
from .llm.cancellation import CancellationToken, InterruptGate
from .llm.stream import StreamEvent
from .logging_setup import configure_logging

logger = structlog.get_logger()


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="ii-code",
        description="II-Code-Agent - an AI coding assistant for your repository",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Start an interactive session")
    chat_parser.add_argument("--workdir", default=None, help="Working directory for the tools")
    chat_parser.add_argument("--session", default=None, help="Session id (random by default)")
    chat_parser.add_argument("--no-checkpoints", action="store_true", help="Disable per-turn checkpoints")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    configure_logging(settings.log_level)

    if args.command == "chat":
        asyncio.run(run_chat(args.workdir, args.session, args.no_checkpoints))
    elif args.command == "config":
        show_config(args.check)
    else:
        parser.print_help()


def _print_event(event: StreamEvent) -> None:
    if event.type == "content":
        sys.stdout.write(event.delta)
        sys.stdout.flush()
    elif event.type == "tool_call_start":
        sys.stdout.write(f"\n[{event.name}]\n")
        sys.stdout.flush()


def _print_compaction(session_id: str, result: CompactResult) -> None:
    if result.compacted:
        print(f"\n(compacted {result.removed_count} messages)")
    else:
        print(f"\n{result.summary}")


async def run_chat(workdir: str | None, session_id: str | None, no_checkpoints: bool) -> None:
    """Read operator messages from stdin until EOF or /exit."""
    from .agent.context import AgentContext

    settings = get_settings()
    if no_checkpoints:
        settings = settings.model_copy(update={"enable_checkpoints": False})

    context = AgentContext.create(settings=settings, working_dir=workdir)
    agent = Agent(context, on_event=_print_event, on_compact=_print_compaction)

    session_id = session_id or uuid.uuid4().hex[:8]
    context.store.get_or_create(session_id)
    logger.info("Session started", session_id=session_id, working_dir=str(context.working_dir))

    loop = asyncio.get_running_loop()
    try:
        while True:
            try:
                text = await loop.run_in_executor(None, input, "\n> ")
            except EOFError:
                break

            text = text.strip()
            if not text:
                continue
            if text in ("/exit", "/quit"):
                break
            if text == "/compact":
                _print_compaction(session_id, await agent.compact(session_id))
                continue
            if text == "/usage":
                print(f"Context usage: {await agent.context_usage(session_id):.0%}")
                continue

            token = CancellationToken()
            gate = InterruptGate(token)
            loop.add_signal_handler(signal.SIGINT, gate.press)
            try:
                result = await agent.process_message(session_id, text, cancel_token=token)
            except (AuthError, RetryExhaustedError) as e:
                logger.error("Turn failed", error=str(e))
                continue
            except TransportError as e:
                logger.error("Transport error", error=str(e), status_code=e.status_code)
                continue
            finally:
                loop.remove_signal_handler(signal.SIGINT)

            if result.aborted:
                print("\n(interrupted)")
            elif result.error:
                print(f"\nError: {result.error}")
            else:
                print()
    finally:
        await agent.end_session(session_id)


def show_config(check: bool) -> None:
    """Show current configuration."""
    settings = get_settings()

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== II-Code-Agent Configuration ===\n")

    print("LLM:")
    print(f"  Provider: {settings.default_provider}")
    print(f"  Model: {settings.default_model}")
    print(f"  Subagent Model: {settings.subagent_model}")
    print(f"  Context Window: {settings.context_window}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")
    print(f"  Z.AI Key: {mask(settings.zai_api_key)}")

    print("\nRuntime:")
    print(f"  Workspace: {settings.workspace_dir}")
    print(f"  Max Tool Iterations: {settings.max_tool_iterations}")
    print(f"  Retry Attempts: {settings.retry_max_attempts}")
    print(f"  Compaction Trigger: {settings.compact_trigger_threshold:.0%}")
    print(f"  Checkpoints: {'enabled' if settings.enable_checkpoints else 'disabled'}")

    if check:
        print("\n=== Configuration Check ===\n")
        config = settings.get_llm_config()
        if config.api_key:
            print(f"  ✓ API key configured for {config.provider}")
        else:
            print(f"  ✗ No API key for provider {config.provider}")
            sys.exit(1)


if __name__ == "__main__":
    main()
