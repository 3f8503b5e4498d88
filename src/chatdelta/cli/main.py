"""chatdelta CLI entry point.

Query several AI providers at once and compare their answers, or hold an
interactive conversation with one of them.
"""

import asyncio
import logging
import os
import sys
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import click

from chatdelta import __version__
from chatdelta.cli.output import (
    OUTPUT_FORMATS,
    failure_warnings,
    render_connection_results,
    render_metrics,
    render_models,
    render_report,
    write_transcript,
)
from chatdelta.config import ChatDeltaConfig, load_config
from chatdelta.core.errors import (
    AllProvidersFailedError,
    PersistenceError,
    ProviderError,
    ProviderUnavailableError,
)
from chatdelta.core.logging_config import configure_logging
from chatdelta.core.metrics import MetricsCollector
from chatdelta.core.orchestrator import OperatingMode, Orchestrator
from chatdelta.core.providers import (
    Provider,
    ProviderClient,
    create_client,
    echo_factory,
    list_known_models,
)
from chatdelta.core.resilience import BackoffKind
from chatdelta.core.session_log import JsonlFileSink, SessionLogger, log_stats

logger = logging.getLogger(__name__)

T = TypeVar("T")


def handle_keyboard_interrupt(func: Callable[..., T]) -> Callable[..., T]:
    """Exit with 130 (128 + SIGINT) when the user presses Ctrl+C."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            click.echo("\nInterrupted.", err=True)
            sys.exit(130)

    return wrapper


# ---------------------------------------------------------------------------
# Shared option handling
# ---------------------------------------------------------------------------


def parse_provider_list(value: Optional[str]) -> Optional[List[Provider]]:
    """Parse a comma-separated provider list, e.g. ``gpt,claude``."""
    if value is None:
        return None
    try:
        return [Provider.parse(item) for item in value.split(",") if item.strip()]
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def select_providers(only: Optional[str], exclude: Optional[str]) -> List[Provider]:
    """Apply --only/--exclude to the full provider set, in enable order."""
    if only and exclude:
        raise click.UsageError("--only and --exclude are mutually exclusive")
    selected = list(Provider)
    if only:
        wanted = set(parse_provider_list(only) or [])
        selected = [p for p in selected if p in wanted]
    elif exclude:
        unwanted = set(parse_provider_list(exclude) or [])
        selected = [p for p in selected if p not in unwanted]
    if not selected:
        raise click.UsageError("No providers left to query")
    return selected


def client_options(func: Callable[..., T]) -> Callable[..., T]:
    """Options shared by every command that talks to providers."""
    options = [
        click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Per-attempt timeout in seconds."),
        click.option("--retries", type=click.IntRange(min=0), help="Retries after the first failed attempt."),
        click.option(
            "--retry-strategy",
            type=click.Choice([k.value for k in BackoffKind]),
            help="Backoff between retries.",
        ),
        click.option("--retry-delay", type=click.FloatRange(min=0), help="Base retry delay in seconds."),
        click.option("--temperature", type=click.FloatRange(0.0, 2.0), help="Sampling temperature (0.0-2.0)."),
        click.option("--max-tokens", type=click.IntRange(min=1), help="Maximum tokens per response."),
        click.option("--gpt-model", help="Model to use for ChatGPT."),
        click.option("--gemini-model", help="Model to use for Gemini."),
        click.option("--claude-model", help="Model to use for Claude."),
        click.option("--log-dir", type=click.Path(file_okay=False), help="Write session log records here."),
        click.option(
            "--offline",
            is_flag=True,
            envvar="CHATDELTA_OFFLINE",
            help="Use local echo clients instead of real providers.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def resolve_config(ctx: click.Context, options: Dict[str, Any]) -> ChatDeltaConfig:
    """Load file/env configuration and apply command-line overrides."""
    try:
        config = load_config(ctx.obj.get("config_path"))
        config.apply_overrides(
            timeout=options.get("timeout"),
            max_retries=options.get("retries"),
            retry_strategy=options.get("retry_strategy"),
            retry_delay=options.get("retry_delay"),
            temperature=options.get("temperature"),
            max_tokens=options.get("max_tokens"),
            log_dir=options.get("log_dir"),
            models={
                Provider.GPT.value: options.get("gpt_model"),
                Provider.GEMINI.value: options.get("gemini_model"),
                Provider.CLAUDE.value: options.get("claude_model"),
            },
        )
        config.validate()
    except (OSError, ValueError) as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc
    return config


def build_clients(
    config: ChatDeltaConfig,
    providers: Iterable[Provider],
    *,
    offline: bool = False,
) -> Tuple[Dict[Provider, ProviderClient], List[str]]:
    """
    Create a client per provider that has credentials and a registered factory.

    Returns:
        (clients, notes) where notes explain each skipped provider
    """
    client_config = config.to_client_configuration()
    clients: Dict[Provider, ProviderClient] = {}
    notes: List[str] = []

    for provider in providers:
        model = config.model_for(provider)
        if offline:
            clients[provider] = create_client(
                provider, "", model, client_config, factory=echo_factory(provider)
            )
            continue

        api_key = os.environ.get(provider.profile.api_key_env)
        if not api_key:
            notes.append(
                f"{provider.display_name} skipped: {provider.profile.api_key_env} is not set"
            )
            continue
        try:
            clients[provider] = create_client(provider, api_key, model, client_config)
        except ProviderUnavailableError as exc:
            notes.append(f"{provider.display_name} skipped: {exc}")

    return clients, notes


def build_session_logger(config: ChatDeltaConfig) -> SessionLogger:
    sinks = []
    if config.log_dir:
        sinks.append(JsonlFileSink(Path(config.log_dir).expanduser()))
    return SessionLogger(sinks)


def report_logging_warnings(ctx: click.Context, session_logger: SessionLogger) -> None:
    if ctx.obj.get("quiet"):
        return
    for warning in session_logger.warnings:
        click.echo(f"Warning: {warning}", err=True)


def require_clients(
    ctx: click.Context, clients: Dict[Provider, ProviderClient], notes: List[str]
) -> None:
    verbose = ctx.obj.get("verbose")
    if verbose or not clients:
        for note in notes:
            click.echo(note, err=True)
    if not clients:
        raise click.ClickException(
            "No AI clients available. Set OPENAI_API_KEY, GEMINI_API_KEY or "
            "ANTHROPIC_API_KEY, install a client plugin, or use --offline."
        )


# ---------------------------------------------------------------------------
# Command group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(__version__, prog_name="chatdelta")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="CHATDELTA_CONFIG",
    help="Path to a TOML config file.",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging and per-provider detail.")
@click.option("-q", "--quiet", is_flag=True, help="Only show errors and results.")
@click.option(
    "--log-format",
    type=click.Choice(["human", "structured"]),
    default="human",
    show_default=True,
    help="Format of diagnostic logging on stderr.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[Path],
    verbose: bool,
    quiet: bool,
    log_format: str,
) -> None:
    """chatdelta - query several AI providers and compare their answers."""
    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive")

    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.WARNING
    configure_logging(level=level, format=log_format)

    ctx.ensure_object(dict)
    ctx.obj.update(config_path=config_path, verbose=verbose, quiet=quiet)


@cli.command("ask")
@click.argument("prompt")
@click.option("--only", help="Comma-separated providers to query (gpt,gemini,claude).")
@click.option("--exclude", help="Comma-separated providers to skip.")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(OUTPUT_FORMATS),
    default="text",
    show_default=True,
    help="Output format.",
)
@click.option("--no-summary", is_flag=True, help="Skip the cross-provider summary.")
@click.option("--log", "log_path", type=click.Path(dir_okay=False, path_type=Path), help="Write a transcript to this file.")
@click.option("--metrics", "show_metrics", is_flag=True, help="Print performance metrics.")
@client_options
@click.pass_context
@handle_keyboard_interrupt
def ask_cmd(
    ctx: click.Context,
    prompt: str,
    only: Optional[str],
    exclude: Optional[str],
    fmt: str,
    no_summary: bool,
    log_path: Optional[Path],
    show_metrics: bool,
    offline: bool,
    **options: Any,
) -> None:
    """Send PROMPT to every enabled provider in parallel."""
    providers = select_providers(only, exclude)
    config = resolve_config(ctx, options)
    clients, notes = build_clients(config, providers, offline=offline)
    require_clients(ctx, clients, notes)

    metrics = MetricsCollector()
    session_logger = build_session_logger(config)
    orchestrator = Orchestrator(
        clients,
        config.to_client_configuration(),
        OperatingMode.PARALLEL,
        metrics=metrics,
        session_logger=session_logger,
        summary_priority=config.summary_providers(),
    )

    try:
        report = asyncio.run(orchestrator.query(prompt, summarize=not no_summary))
    except AllProvidersFailedError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        orchestrator.close()
        report_logging_warnings(ctx, session_logger)

    if not ctx.obj.get("quiet") and fmt == "text":
        for line in failure_warnings(report):
            click.echo(line, err=True)

    click.echo(render_report(report, fmt, verbose=ctx.obj.get("verbose", False)))

    if log_path is not None:
        try:
            write_transcript(log_path, report)
        except OSError as exc:
            click.echo(f"Warning: Failed to write log file {log_path}: {exc}", err=True)
        else:
            if not ctx.obj.get("quiet"):
                click.echo(f"Conversation logged to {log_path}", err=True)

    if config.log_dir and not ctx.obj.get("quiet"):
        stats = log_stats(Path(config.log_dir).expanduser())
        click.echo(
            f"Logged to structured logs ({stats.total_files} file(s), "
            f"{stats.size_human_readable()})",
            err=True,
        )

    if show_metrics:
        click.echo(render_metrics(metrics.session_summary(), verbose=ctx.obj.get("verbose", False)))


@cli.command("chat")
@click.option("--provider", "provider_name", default="gpt", show_default=True, help="Provider to talk to.")
@click.option("--system-prompt", help="Instructions prepended to every turn.")
@click.option("--load", "load_path", type=click.Path(dir_okay=False, path_type=Path), help="Resume a saved conversation.")
@click.option("--save", "save_path", type=click.Path(dir_okay=False, path_type=Path), help="Save the conversation on exit.")
@client_options
@click.pass_context
@handle_keyboard_interrupt
def chat_cmd(
    ctx: click.Context,
    provider_name: str,
    system_prompt: Optional[str],
    load_path: Optional[Path],
    save_path: Optional[Path],
    offline: bool,
    **options: Any,
) -> None:
    """Hold an interactive conversation with one provider.

    Commands inside the loop: /clear, /save PATH, /metrics, /exit.
    """
    try:
        provider = Provider.parse(provider_name)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--provider") from exc

    config = resolve_config(ctx, options)
    clients, notes = build_clients(config, list(Provider), offline=offline)
    require_clients(ctx, clients, notes)

    metrics = MetricsCollector()
    session_logger = build_session_logger(config)
    orchestrator = Orchestrator(
        clients,
        config.to_client_configuration(),
        OperatingMode.CONVERSATION,
        metrics=metrics,
        session_logger=session_logger,
    )

    try:
        try:
            if load_path is not None:
                session = orchestrator.resume_conversation(load_path)
            else:
                session = orchestrator.start_conversation(provider, system_prompt=system_prompt)
        except (PersistenceError, ValueError) as exc:
            raise click.ClickException(str(exc)) from exc

        name = session.active_provider.display_name
        click.echo(f"Chatting with {name}. Type /exit to quit.", err=True)

        while True:
            try:
                text = click.prompt("You", prompt_suffix="> ", default="", show_default=False)
            except click.Abort:
                break
            text = text.strip()
            if not text:
                continue
            if text in ("/exit", "/quit"):
                break
            if text == "/clear":
                session.clear()
                click.echo("History cleared.", err=True)
                continue
            if text == "/metrics":
                click.echo(render_metrics(metrics.session_summary(), verbose=True))
                continue
            if text.startswith("/save"):
                target = text[len("/save"):].strip()
                if not target:
                    click.echo("Usage: /save PATH", err=True)
                    continue
                try:
                    session.save(target)
                    click.echo(f"Saved to {target}", err=True)
                except PersistenceError as exc:
                    click.echo(f"Error: {exc}", err=True)
                continue

            try:
                reply = asyncio.run(session.send(text))
            except ProviderError as exc:
                click.echo(f"Error from {name} ({exc.kind.value}): {exc}", err=True)
                continue
            click.echo(f"{name}: {reply.content}")

        if save_path is not None:
            try:
                session.save(save_path)
                click.echo(f"Saved to {save_path}", err=True)
            except PersistenceError as exc:
                raise click.ClickException(str(exc)) from exc
    finally:
        orchestrator.close()
        report_logging_warnings(ctx, session_logger)


@cli.command("models")
def models_cmd() -> None:
    """List the known models for each provider."""
    click.echo(render_models(list_known_models()))


@cli.command("test")
@click.option("--only", help="Comma-separated providers to test.")
@click.option("--exclude", help="Comma-separated providers to skip.")
@client_options
@click.pass_context
@handle_keyboard_interrupt
def test_cmd(
    ctx: click.Context,
    only: Optional[str],
    exclude: Optional[str],
    offline: bool,
    **options: Any,
) -> None:
    """Check that every configured provider answers."""
    providers = select_providers(only, exclude)
    config = resolve_config(ctx, options)
    clients, notes = build_clients(config, providers, offline=offline)
    for note in notes:
        click.echo(note, err=True)
    if not clients:
        raise click.ClickException("No AI clients available to test")

    orchestrator = Orchestrator(
        clients, config.to_client_configuration(), OperatingMode.PARALLEL
    )
    try:
        results = asyncio.run(orchestrator.test_connections())
    finally:
        orchestrator.close()

    click.echo(render_connection_results(results))
    if not all(outcome.success for outcome in results.values()):
        sys.exit(1)


if __name__ == "__main__":
    cli()
