"""
sbexplorer Command-Line Interface

Browse, search, send, purge, monitor and repair messages on Azure Service Bus
queues and topic subscriptions. Results are printed as JSON lines.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click

from . import __version__
from .client import ServiceBusExplorerClient
from .config import ClientConfig, load_config
from .exceptions import ServiceBusError
from .logging_utils import configure_logging
from .models import EntityDescriptor


def emit(data: Dict[str, Any]) -> None:
    click.echo(json.dumps(data, default=str))


def run(coro: Any) -> Any:
    """Run ``coro``; typed errors are printed to stderr and exit with status 1."""
    try:
        return asyncio.run(coro)
    except ServiceBusError as e:
        click.echo(json.dumps(e.to_dict(), default=str), err=True)
        sys.exit(1)


def parse_properties(pairs: Tuple[str, ...]) -> Dict[str, str]:
    properties = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--property")
        properties[key] = value
    return properties


def entity_options(func):
    """Attach the entity selection options to a command."""
    options = [
        click.option("--queue", "-q", help="Queue name"),
        click.option("--topic", "-t", help="Topic name"),
        click.option("--subscription", "-s", help="Subscription name (with --topic)"),
        click.option("--dead-letter", is_flag=True, help="Use the dead-letter sub-queue"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


class Context:
    """Settings shared by every command."""

    def __init__(self, namespace: str, token: str, config: ClientConfig):
        self.namespace = namespace
        self.token = token
        self.config = config

    def entity(self, queue: Optional[str], topic: Optional[str], subscription: Optional[str],
               dead_letter: bool = False) -> EntityDescriptor:
        try:
            return EntityDescriptor(
                namespace=self.namespace,
                queue=queue,
                topic=topic,
                subscription=subscription,
                dead_letter=dead_letter,
            )
        except ValueError as e:
            raise click.UsageError(str(e)) from e

    def client(self) -> ServiceBusExplorerClient:
        return ServiceBusExplorerClient(self.namespace, self.token, self.config)


@click.group()
@click.version_option(version=__version__, prog_name="sbexplorer")
@click.option("--namespace", "-n", envvar="SBX_NAMESPACE", required=True,
              help="Service Bus namespace (name or fully-qualified host)")
@click.option("--token", envvar="SBX_TOKEN", required=True,
              help="Bearer token for the namespace (or set SBX_TOKEN)")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level (overrides configuration)",
)
@click.pass_context
def cli(ctx, namespace: str, token: str, config_file: Optional[Path], log_level: Optional[str]):
    """
    sbexplorer - Azure Service Bus message explorer

    Peek, search, send, purge, monitor, delete, dead-letter and resend messages.
    """
    overrides = {"logging": {"level": log_level.upper()}} if log_level else None
    try:
        config = load_config(str(config_file) if config_file else None, overrides)
    except ValueError as e:
        raise click.UsageError(f"Invalid configuration: {e}") from e
    configure_logging(config.logging.level, config.logging.json_format, config.logging.file)
    ctx.obj = Context(namespace, token, config)


@cli.command()
@entity_options
@click.option("--from-sequence", default=0, show_default=True, type=int, help="First sequence number")
@click.option("--count", default=10, show_default=True, type=click.IntRange(min=1), help="Maximum messages")
@click.pass_obj
def peek(obj: Context, queue, topic, subscription, dead_letter, from_sequence: int, count: int):
    """
    Browse messages without locking them.

    Examples:
        sbexplorer -n contoso peek --queue orders --count 20
        sbexplorer -n contoso peek -t events -s audit --dead-letter
    """
    entity = obj.entity(queue, topic, subscription, dead_letter)

    async def main():
        async with obj.client() as client:
            return await client.peek(entity, from_sequence, count)

    for message in run(main()):
        emit(message.to_dict())


@cli.command()
@entity_options
@click.option("--body", "-b", required=True, help="Message body")
@click.option("--json", "as_json", is_flag=True, help="Parse the body as JSON before sending")
@click.option("--content-type", help="Content type")
@click.option("--message-id", help="Message id (generated when omitted)")
@click.option("--correlation-id", help="Correlation id")
@click.option("--subject", help="Subject (label)")
@click.option("--session-id", help="Session id")
@click.option("--ttl", type=float, help="Time to live in seconds")
@click.option("--property", "-p", "properties", multiple=True, help="Application property KEY=VALUE")
@click.pass_obj
def send(obj: Context, queue, topic, subscription, dead_letter, body: str, as_json: bool,
         content_type: Optional[str], message_id: Optional[str], correlation_id: Optional[str],
         subject: Optional[str], session_id: Optional[str], ttl: Optional[float], properties):
    """Send one message to a queue or topic."""
    if dead_letter or subscription:
        raise click.UsageError("Messages are sent to a queue or topic")
    entity = obj.entity(queue, topic, None)
    application_properties = parse_properties(properties)
    payload: Any = body
    if as_json:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"invalid JSON: {e}", param_hint="--body") from e

    async def main():
        async with obj.client() as client:
            return await client.send(
                entity,
                payload,
                content_type=content_type,
                message_id=message_id,
                correlation_id=correlation_id,
                subject=subject,
                session_id=session_id,
                time_to_live=ttl,
                application_properties=application_properties,
            )

    emit({"messageId": run(main())})


@cli.command()
@entity_options
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def purge(obj: Context, queue, topic, subscription, dead_letter, yes: bool):
    """Delete every message of an entity."""
    entity = obj.entity(queue, topic, subscription, dead_letter)
    if not yes:
        click.confirm(f"Delete all messages from {entity}?", abort=True, err=True)

    def progress(count: int) -> None:
        click.echo(json.dumps({"deleted": count, "final": False}), err=True)

    async def main():
        async with obj.client() as client:
            operation = await client.purge(entity, progress)
            try:
                return await operation
            except asyncio.CancelledError:
                operation.stop()
                raise

    try:
        deleted = run(main())
    except KeyboardInterrupt:
        click.echo("Purge interrupted", err=True)
        sys.exit(130)
    emit({"deleted": deleted, "final": True})


@cli.command()
@entity_options
@click.option("--duration", type=float, help="Stop after this many seconds (default: until interrupted)")
@click.pass_obj
def monitor(obj: Context, queue, topic, subscription, dead_letter, duration: Optional[float]):
    """Print new messages as they arrive, without removing them."""
    entity = obj.entity(queue, topic, subscription, dead_letter)

    def on_error(error: Exception) -> None:
        payload = error.to_dict() if isinstance(error, ServiceBusError) else {"error": {"message": str(error)}}
        click.echo(json.dumps(payload, default=str), err=True)

    async def main():
        async with obj.client() as client:
            watcher = await client.monitor(entity, lambda m: emit(m.to_dict()), on_error)
            try:
                if duration is None:
                    await asyncio.Event().wait()
                else:
                    await asyncio.sleep(duration)
            finally:
                await watcher.stop()

    try:
        run(main())
    except KeyboardInterrupt:
        click.echo("Monitor stopped", err=True)


@cli.command()
@entity_options
@click.option("--body", help="Text the message body must contain")
@click.option("--message-id", help="Text the message id must contain")
@click.option("--subject", help="Text the subject must contain")
@click.option("--max-matches", type=click.IntRange(min=1), help="Stop after this many matches")
@click.option("--max-messages", type=click.IntRange(min=1), help="Stop after scanning this many messages")
@click.pass_obj
def search(obj: Context, queue, topic, subscription, dead_letter, body: Optional[str],
           message_id: Optional[str], subject: Optional[str], max_matches: Optional[int],
           max_messages: Optional[int]):
    """
    Scan messages for text in the body, message id or subject.

    Matching is case-insensitive. Progress is written to stderr; the final
    result lists the matching sequence numbers.

    Examples:
        sbexplorer -n contoso search --queue orders --body "customer-42"
        sbexplorer -n contoso search -t events -s audit --dead-letter --subject refund
    """
    entity = obj.entity(queue, topic, subscription, dead_letter)

    def progress(scanned: int, matches: int, new_matches) -> None:
        click.echo(json.dumps({"scanned": scanned, "matches": matches,
                               "newMatches": new_matches}), err=True)

    async def main():
        async with obj.client() as client:
            operation = await client.search(
                entity,
                body=body,
                message_id=message_id,
                subject=subject,
                on_progress=progress,
                max_matches=max_matches,
                max_messages=max_messages,
            )
            try:
                return await operation
            except asyncio.CancelledError:
                operation.stop()
                raise

    try:
        result = run(main())
    except KeyboardInterrupt:
        click.echo("Search interrupted", err=True)
        sys.exit(130)
    emit(result.to_dict())


def _emit_result(result) -> None:
    emit(result.to_dict())
    if result.failure_count:
        sys.exit(2)


@cli.command()
@entity_options
@click.argument("sequence_numbers", nargs=-1, type=int, required=True)
@click.pass_obj
def delete(obj: Context, queue, topic, subscription, dead_letter, sequence_numbers):
    """Delete messages by sequence number."""
    entity = obj.entity(queue, topic, subscription, dead_letter)

    async def main():
        async with obj.client() as client:
            return await client.delete_by_sequence(entity, sequence_numbers)

    _emit_result(run(main()))


@cli.command("dead-letter")
@entity_options
@click.argument("sequence_numbers", nargs=-1, type=int, required=True)
@click.option("--reason", default="Manual dead letter", show_default=True, help="Dead-letter reason")
@click.option("--description", default="Moved by user", show_default=True, help="Dead-letter description")
@click.pass_obj
def dead_letter_command(obj: Context, queue, topic, subscription, dead_letter, sequence_numbers,
                        reason: str, description: str):
    """Move messages to the dead-letter sub-queue by sequence number."""
    if dead_letter:
        raise click.UsageError("Messages are already in the dead-letter sub-queue")
    entity = obj.entity(queue, topic, subscription)

    async def main():
        async with obj.client() as client:
            return await client.dead_letter_by_sequence(entity, sequence_numbers, reason, description)

    _emit_result(run(main()))


@cli.command()
@entity_options
@click.argument("sequence_numbers", nargs=-1, type=int, required=True)
@click.option("--from-main", is_flag=True, help="Read from the entity itself instead of its dead-letter sub-queue")
@click.option("--keep-original", is_flag=True, help="Do not delete the source messages")
@click.pass_obj
def resend(obj: Context, queue, topic, subscription, dead_letter, sequence_numbers,
           from_main: bool, keep_original: bool):
    """
    Send copies of messages back to their entity.

    By default messages are taken from the dead-letter sub-queue and deleted
    there once re-sent.
    """
    entity = obj.entity(queue, topic, subscription)

    async def main():
        async with obj.client() as client:
            return await client.resend_by_sequence(
                entity,
                sequence_numbers,
                from_dead_letter=not from_main,
                delete_original=not keep_original,
            )

    _emit_result(run(main()))


def main():
    """Main entry point for CLI."""
    cli(auto_envvar_prefix="SBX")


if __name__ == "__main__":
    main()
