"""Command line interface.

    chatters run              sync all enabled backends until interrupted
    chatters conversations    list conversations from the snapshot cache
    chatters messages KEY     show recent messages of a cached conversation
    chatters backends         list backend kinds and configured backends
"""

import asyncio
import signal
from datetime import datetime
from pathlib import Path

import click

from chatters.backends import BackendRegistry
from chatters.cache import ConversationCache
from chatters.config import Config, load_config
from chatters.logging import get_logger, setup_logging
from chatters.models import Change, ChangeKind, Conversation, ConversationKey, DeliveryState, Message
from chatters.normalizers import NormalizerRegistry
from chatters.sync.engine import SyncEngine
from chatters.sync.notifications import Subscription

logger = get_logger("cli")

STATE_MARKS = {
    DeliveryState.SENDING: "…",
    DeliveryState.SENT: "✓",
    DeliveryState.DELIVERED: "✓✓",
    DeliveryState.READ: "✓✓✓",
    DeliveryState.FAILED: "✗",
}


def format_timestamp(ts_ms: int | None) -> str:
    """Format a millisecond timestamp for display."""
    if ts_ms is None:
        return "-"
    return datetime.fromtimestamp(ts_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def format_message(conversation: Conversation, message: Message) -> str:
    sender = conversation.participant(message.sender_id)
    name = sender.name if sender else message.sender_id
    if message.redacted:
        text = "<deleted>"
    else:
        parts = []
        if message.body.quote is not None:
            parts.append(f"> {message.body.quote.text or message.body.quote.native_id} |")
        if message.text:
            parts.append(message.text)
        for attachment in message.body.attachments:
            parts.append(f"[{attachment.name or attachment.mime_type} {attachment.human_size()}]")
        text = " ".join(parts)
    line = f"\033[36m[{format_timestamp(message.timestamp)}]\033[0m \033[1m{name}\033[0m: {text}"
    if message.edited:
        line += " (edited)"
    if message.outgoing:
        line += f" {STATE_MARKS[message.delivery_state]}"
    reactions = message.reaction_counts()
    if reactions:
        line += " " + " ".join(f"{emoji}{count}" for emoji, count in reactions.items())
    return line


def format_conversation(conversation: Conversation) -> str:
    unread = f" \033[33m({conversation.unread} unread)\033[0m" if conversation.unread else ""
    return (
        f"\033[36m[{format_timestamp(conversation.last_activity)}]\033[0m "
        f"\033[1m{conversation.name}\033[0m{unread}  {conversation.key}"
    )


def build_engine(config: Config) -> SyncEngine:
    """Create the engine and every enabled backend from configuration.

    Raises:
        ValueError: for an unknown backend kind or invalid backend options
    """
    cache = ConversationCache(config.cache_db) if config.cache_db else None
    engine = SyncEngine(settings=config.sync, hooks=config.hooks, cache=cache)
    for backend_id, backend_config in config.enabled_backends().items():
        backend = BackendRegistry.create(backend_config.kind, backend_id, backend_config.factory_options())
        engine.add_backend(backend)
    return engine


def describe_change(engine: SyncEngine, change: Change) -> str | None:
    if change.kind is ChangeKind.CONNECTION_CHANGED:
        return f"* {change.backend_id}: {change.connection}"
    if change.key is None:
        return None
    conversation = engine.store.get(change.key)
    if change.kind is ChangeKind.CONVERSATION_REMOVED or conversation is None:
        return f"- {change.key}"
    if change.kind is ChangeKind.CONVERSATION_ADDED:
        return f"+ {format_conversation(conversation)}"
    if change.kind is ChangeKind.MESSAGE_ADDED and change.native_id is not None:
        message = conversation.message(change.native_id)
        if message is not None:
            return f"{conversation.name}: {format_message(conversation, message)}"
    return None


async def _echo_changes(engine: SyncEngine, subscription: Subscription) -> None:
    async for changes in subscription:
        for change in changes:
            line = describe_change(engine, change)
            if line is not None:
                click.echo(line)


async def run_engine(engine: SyncEngine, stop: asyncio.Event) -> None:
    """Run the engine, echoing changes, until `stop` is set."""
    async with engine:
        subscription = engine.subscribe()
        printer = asyncio.create_task(_echo_changes(engine, subscription))
        try:
            await stop.wait()
        finally:
            subscription.close()
            await printer


async def _run_until_signalled(engine: SyncEngine) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(signum: int) -> None:
        logger.info("Received signal %s, shutting down", signal.Signals(signum).name)
        stop.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, request_shutdown, signum)
    await run_engine(engine, stop)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Configuration file (defaults to the standard search paths)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Unified multi-backend chat synchronization."""
    try:
        ctx.obj = load_config(config_path)
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e


@cli.command()
@click.pass_obj
def run(config: Config) -> None:
    """Sync every enabled backend and print changes until interrupted."""
    setup_logging("run", config.log_dir, config.log_level)
    try:
        engine = build_engine(config)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    logger.info(
        "Starting chatters: device=%s backends=%s",
        config.device_name,
        ",".join(config.enabled_backends()),
    )
    asyncio.run(_run_until_signalled(engine))
    logger.info("chatters stopped")


def _open_cache(config: Config) -> ConversationCache:
    if config.cache_db is None:
        raise click.ClickException("No cache_db configured")
    if not config.cache_db.exists():
        raise click.ClickException(f"Cache not found: {config.cache_db}")
    return ConversationCache(config.cache_db)


@cli.command()
@click.option("--backend", "backend_id", help="Only this backend's conversations")
@click.pass_obj
def conversations(config: Config, backend_id: str | None) -> None:
    """List cached conversations, most recent first."""
    with _open_cache(config) as cache:
        cached = cache.load(backend_id)
    cached.sort(key=lambda c: (-(c.last_activity or 0), c.name, str(c.key)))
    if not cached:
        click.echo("No conversations cached.")
        return
    for conversation in cached:
        click.echo(format_conversation(conversation))


@cli.command()
@click.argument("key")
@click.option("--limit", "-n", default=20, help="Number of messages")
@click.pass_obj
def messages(config: Config, key: str, limit: int) -> None:
    """Show the most recent cached messages of conversation KEY (backend:id)."""
    try:
        conversation_key = ConversationKey.parse(key)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="KEY") from e
    with _open_cache(config) as cache:
        conversation = cache.load_conversation(conversation_key)
    if conversation is None:
        raise click.ClickException(f"Conversation not cached: {key}")
    click.echo(format_conversation(conversation))
    if conversation.description:
        click.echo(conversation.description)
    click.echo("-" * 40)
    for message in conversation.messages[-limit:] if limit > 0 else ():
        click.echo(format_message(conversation, message))


@cli.command()
@click.pass_obj
def backends(config: Config) -> None:
    """List supported backend kinds and the configured backends."""
    click.echo("Kinds:")
    for kind in sorted(BackendRegistry.all_kinds()):
        marker = "" if NormalizerRegistry.get(kind) else " (no normalizer)"
        click.echo(f"  {kind}{marker}")
    click.echo("Configured:")
    for backend_id, backend_config in config.backends.items():
        status = "enabled" if backend_config.enabled else "disabled"
        click.echo(f"  {backend_id}: {backend_config.kind} ({status})")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
