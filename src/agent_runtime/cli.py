"""
Command-line interface for agent-runtime.
"""

import argparse
import asyncio
import signal
import sys

import structlog

from .agent import Agent, AgentCallbacks, CallbackGroup, LoggingCallbacks, SessionManager
from .config import Settings, get_settings
from .errors import AgentRuntimeError, ErrorKind, SessionError
from .logging_config import configure_logging

logger = structlog.get_logger()


class ConsoleCallbacks(AgentCallbacks):
    """Print streamed text and tool activity to the terminal."""

    def on_llm_stream(self, span, chunk):
        sys.stdout.write(chunk)
        sys.stdout.flush()

    def on_tool_start(self, span, call):
        print(f"\n[tool] {call.name} {call.arguments}", file=sys.stderr)

    def on_tool_end(self, span, call, result):
        print(f"[tool] {call.name}: {result.status.value} ({result.title})", file=sys.stderr)

    def on_retry(self, span, attempt, delay, error):
        print(f"[retry] attempt {attempt} in {delay:.1f}s: {error.message}", file=sys.stderr)

    def on_error(self, error):
        print(f"\nError: {error.user_message()}", file=sys.stderr)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="agent-runtime",
        description="agent-runtime - an LLM agent with tools and resumable sessions",
    )
    parser.add_argument("--provider", choices=["anthropic", "openai", "openrouter"], help="LLM provider")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ask_parser = subparsers.add_parser("ask", help="Run one query through the agent")
    ask_parser.add_argument("query", help="The question or task")
    ask_parser.add_argument("--session", help="Session id to continue (and save into)")
    ask_parser.add_argument("--resume", action="store_true", help="Continue the most recent session")

    sessions_parser = subparsers.add_parser("sessions", help="Manage saved sessions")
    sessions_subparsers = sessions_parser.add_subparsers(dest="sessions_command")
    sessions_subparsers.add_parser("list", help="List saved sessions")
    show_parser = sessions_subparsers.add_parser("show", help="Show a saved session")
    show_parser.add_argument("session_id")
    delete_parser = sessions_subparsers.add_parser("delete", help="Delete a saved session")
    delete_parser.add_argument("session_id")
    purge_parser = sessions_subparsers.add_parser("purge", help="Delete the oldest sessions")
    purge_parser.add_argument("--keep", type=int, default=None, help="Sessions to keep")

    subparsers.add_parser("config", help="Show configuration")

    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        if args.command == "ask":
            code = asyncio.run(ask(settings, args.query, args.session, args.resume, args.provider))
            sys.exit(code)
        elif args.command == "sessions":
            if args.sessions_command is None:
                sessions_parser.print_help()
            else:
                asyncio.run(manage_sessions(settings, args))
        elif args.command == "config":
            show_config(settings)
        else:
            parser.print_help()
    except AgentRuntimeError as e:
        print(f"Error [{e.kind.value}]: {e.message}", file=sys.stderr)
        sys.exit(1)


async def ask(
    settings: Settings,
    query: str,
    session_id: str | None,
    resume: bool,
    provider: str | None,
) -> int:
    """Run one turn, streaming the answer to stdout. Returns the exit code."""
    from .llm import create_llm
    from .tools import create_default_registry

    config = settings.get_agent_config()
    manager = SessionManager.from_config(config, settings)
    llm = create_llm(settings.get_llm_config(provider))
    callbacks = CallbackGroup(ConsoleCallbacks(), LoggingCallbacks())

    tracer_provider = None
    if settings.telemetry_exporter != "none":
        from .telemetry.otel import OpenTelemetryCallbacks, create_exporter, create_tracer_provider

        tracer_provider = create_tracer_provider(
            create_exporter(settings.telemetry_exporter, settings.otel_endpoint or None),
            service_name=settings.app_name,
        )
        callbacks.add(OpenTelemetryCallbacks(tracer_provider, provider_name=llm.provider_name, model=llm.model))

    agent = Agent(
        llm=llm,
        tool_registry=create_default_registry(settings),
        config=config,
        callbacks=callbacks,
        session_manager=manager,
        settings=settings,
    )

    if resume and not session_id:
        session_id = await manager.last_session_id()
        if session_id is None:
            print("No previous session to resume; starting a new one.", file=sys.stderr)

    if session_id:
        try:
            await agent.resume_session(session_id)
        except SessionError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
            agent.session_id = session_id
        else:
            last = agent.history.last_user_message()
            if last is not None:
                print(f"[session] resuming {session_id}; last prompt: {last.content[:80]}", file=sys.stderr)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, agent.cancel)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        result = await agent.run_turn(query)
    finally:
        await manager.close()
        if tracer_provider is not None:
            tracer_provider.shutdown()
    print()
    if agent.session_id:
        print(f"[session] {agent.session_id}", file=sys.stderr)
    return 0 if result.success else 1


async def manage_sessions(settings: Settings, args: argparse.Namespace) -> None:
    """Handle the ``sessions`` subcommands."""
    manager = SessionManager.from_config(settings.get_agent_config(), settings)
    try:
        await _run_sessions_command(manager, args)
    finally:
        await manager.close()


async def _run_sessions_command(manager: SessionManager, args: argparse.Namespace) -> None:
    if args.sessions_command == "list":
        sessions = await manager.list()
        if not sessions:
            print("No saved sessions.")
            return
        print(f"{'ID':<32} {'Messages':<9} {'Last activity':<34} First message")
        print("-" * 100)
        for meta in sessions:
            preview = meta.first_message.replace("\n", " ")[:40]
            print(f"{meta.id:<32} {meta.message_count:<9} {meta.last_activity_at:<34} {preview}")

    elif args.sessions_command == "show":
        session = await manager.resume(args.session_id)
        meta = session.metadata
        print(f"Session: {meta.name} ({meta.id})")
        print(f"Created: {meta.created_at}")
        print(f"Last activity: {meta.last_activity_at}")
        print(f"Model: {meta.provider}/{meta.model}")
        print(f"Tokens: {meta.input_tokens} in / {meta.output_tokens} out\n")
        for message in session.messages:
            label = message.role if message.role != "tool" else f"tool:{message.name}"
            print(f"[{label}] {message.content[:500]}")
            for call in message.tool_calls or []:
                print(f"    -> {call.name}({call.arguments})")

    elif args.sessions_command == "delete":
        if await manager.delete(args.session_id):
            print(f"Deleted {args.session_id}")
        else:
            print(f"Session not found: {args.session_id}")

    elif args.sessions_command == "purge":
        deleted = await manager.purge(args.keep)
        print(f"Deleted {deleted} session(s)")


def show_config(settings: Settings) -> None:
    """Show current configuration."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    config = settings.get_agent_config()

    print("\n=== agent-runtime Configuration ===\n")

    print("LLM Providers:")
    print(f"  Default: {settings.default_provider}")
    print(f"  Default Model: {settings.get_llm_config().model}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")

    print("\nAgent Loop:")
    print(f"  Max Iterations: {config.max_iterations}")
    print(f"  Parallel Tools: {config.max_parallel_tools}")
    print(f"  Retries: {config.max_retries} (base {config.base_delay}s, max {config.max_delay}s, "
          f"jitter {config.jitter_factor})")

    print("\nContext:")
    print(f"  Window: {config.context_window_tokens} tokens ({config.reserved_completion_tokens} reserved)")
    print(f"  Policy: {config.context_policy}")
    print(f"  History Ceiling: {config.history_token_ceiling} tokens")

    print("\nSessions:")
    print(f"  Backend: {settings.session_backend}")
    if settings.session_backend == "sql":
        print(f"  Database: {settings.database_url}")
    else:
        print(f"  Directory: {settings.session_path}")
    print(f"  Max Sessions: {config.max_sessions}")
    print(f"  Auto-save: {config.auto_save}")

    print("\nTelemetry:")
    print(f"  Span Exporter: {settings.telemetry_exporter}")


if __name__ == "__main__":
    main()
