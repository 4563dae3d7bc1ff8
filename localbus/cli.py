"""
LocalBus Command-Line Interface

Inspect configurations, print connection strings, list the entities a
configuration provisions, and run the course walkthrough against an
in-memory namespace.

Author: LocalBus Team
Date: 2026-03-15
"""

import sys
import json
import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from pydantic import ValidationError

from localbus import __version__
from localbus.core.config_manager import ConfigManager, LocalBusConfig
from localbus.core.logging_config import setup_logging
from localbus.servicebus.backend import ServiceBusBackend
from localbus.servicebus.config import connection_string_for, create_backend, provision
from localbus.servicebus.exceptions import ServiceBusError
from localbus.servicebus.models import (
    CorrelationRuleFilter,
    EntityStatus,
    FalseRuleFilter,
    RuleProperties,
    SqlRuleFilter,
)
from localbus.walkthrough import run_walkthrough


CONFIG_OPTION = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file (YAML or JSON)",
)

# Quieter than LoggingConfig's defaults; the file, env and flags all override it
CLI_LOGGING_DEFAULTS = {"level": "WARNING", "format": "text"}


@click.group()
@click.version_option(version=__version__, prog_name="localbus")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level [default: WARNING, or the configured level]",
)
@click.option(
    "--log-format",
    default=None,
    type=click.Choice(["json", "text"], case_sensitive=False),
    help="Log output format [default: text, or the configured format]",
)
@click.pass_context
def cli(ctx, log_level: Optional[str], log_format: Optional[str]):
    """
    LocalBus - In-memory Azure Service Bus test double

    Run Service Bus code offline against local queues, topics and subscriptions.
    """
    ctx.ensure_object(dict)
    given = {}
    if log_level:
        given["level"] = log_level.upper()
    if log_format:
        given["format"] = log_format.lower()
    ctx.obj["logging"] = given

    baseline = dict(CLI_LOGGING_DEFAULTS, **given)
    setup_logging(baseline["level"], baseline["format"])


def _load_config(ctx: click.Context, config_path: Optional[Path]) -> LocalBusConfig:
    """
    Load configuration and apply its logging section.

    Exits with status 1 when the configuration is invalid.
    """
    given = ctx.obj.get("logging") if ctx.obj else None
    try:
        config = ConfigManager().load(
            config_file=str(config_path) if config_path else None,
            cli_overrides={"logging": given} if given else None,
            defaults={"logging": CLI_LOGGING_DEFAULTS},
        )
    except (ValidationError, FileNotFoundError, ValueError) as e:
        click.echo(f"[ERROR] Invalid configuration: {e}", err=True)
        sys.exit(1)

    setup_logging(
        config.logging.level.value,
        config.logging.format,
        log_file=config.logging.file,
        rotation_size=config.logging.rotation_size,
        rotation_count=config.logging.rotation_count,
        module_levels=config.logging.module_levels,
    )
    return config


async def _provisioned_backend(config: LocalBusConfig) -> ServiceBusBackend:
    backend = create_backend(config, register=False)
    await provision(backend, config)
    return backend


def _run(coro, failure: str = "Operation failed"):
    """Run a coroutine, exiting with status 1 on a Service Bus error."""
    try:
        return asyncio.run(coro)
    except ServiceBusError as e:
        click.echo(f"[ERROR] {failure}: {e.message}", err=True)
        sys.exit(1)


def _status(status: Any) -> str:
    return EntityStatus(status).value


def _describe_filter(rule: RuleProperties) -> str:
    rule_filter = rule.filter
    if isinstance(rule_filter, SqlRuleFilter):
        return f"SQL: {rule_filter.sql_expression}"
    if isinstance(rule_filter, CorrelationRuleFilter):
        fields = rule_filter.model_dump(exclude={"filter_type", "properties"}, exclude_none=True)
        fields.update(rule_filter.properties)
        return "Correlation: " + ", ".join(f"{k}={v}" for k, v in fields.items())
    if isinstance(rule_filter, FalseRuleFilter):
        return "False"
    return "True"


def _echo_table(headers: List[str], rows: List[List[Any]]) -> None:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(str(cell)))
    click.echo("  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
    click.echo("  ".join("-" * w for w in widths))
    for row in rows:
        click.echo("  ".join(str(cell).ljust(widths[i]) for i, cell in enumerate(row)))


def _echo_properties(properties: Dict[str, Any], indent: str = "  ") -> None:
    width = max(len(key) for key in properties)
    for key, value in properties.items():
        if value is None:
            value = "-"
        click.echo(f"{indent}{key.ljust(width)}  {value}")


@cli.command()
def version():
    """Show LocalBus version."""
    click.echo(f"LocalBus version {__version__}")


@cli.command("connection-string")
@CONFIG_OPTION
@click.option("--entity", "-e", help="Scope the connection string to one queue or topic")
@click.pass_context
def connection_string(ctx, config_path: Optional[Path], entity: Optional[str]):
    """
    Print the connection string for the configured namespace.

    Examples:
        localbus connection-string
        localbus connection-string --config localbus.yaml --entity inference-requests
    """
    config = _load_config(ctx, config_path)
    click.echo(connection_string_for(config, entity_path=entity))


# ========== Configuration Commands ==========

@cli.group()
def config():
    """Validate LocalBus configuration files."""
    pass


@config.command("check")
@click.option(
    "--config",
    "-c",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file (YAML or JSON)",
)
@click.pass_context
def check(ctx, config_path: Path):
    """
    Validate a configuration file and summarise what it provisions.

    Example:
        localbus config check --config localbus.yaml
    """
    config = _load_config(ctx, config_path)

    click.echo(f"[OK] Configuration is valid: {config_path}")
    click.echo()
    click.echo(f"Namespace:   {config.namespace.name}")
    click.echo(f"Retry:       total={config.retry.total} backoff_factor={config.retry.backoff_factor}"
               f" backoff_max={config.retry.backoff_max}")
    click.echo(f"Auth rules:  {len(config.authorization_rules)}")
    click.echo(f"Queues:      {len(config.queues)}")
    for queue in config.queues:
        click.echo(f"  - {queue.name}")
    click.echo(f"Topics:      {len(config.topics)}")
    for topic in config.topics:
        click.echo(f"  - {topic.name}")
        for subscription in topic.subscriptions:
            rules = ", ".join(rule.name for rule in subscription.rules) or "$Default"
            click.echo(f"      {subscription.name} (rules: {rules})")


# ========== Queue Commands ==========

@cli.group()
def queue():
    """Inspect the queues a configuration provisions."""
    pass


@queue.command("list")
@CONFIG_OPTION
@click.pass_context
def list_queues(ctx, config_path: Optional[Path]):
    """
    List queues.

    Example:
        localbus queue list --config localbus.yaml
    """
    config = _load_config(ctx, config_path)

    async def do_list():
        backend = await _provisioned_backend(config)
        return await backend.list_queues()

    queues = _run(do_list())

    if not queues:
        click.echo("No queues found.")
        return

    rows = []
    for description in queues:
        props = description.properties
        rows.append([
            description.name,
            _status(props.status),
            "yes" if props.requires_session else "no",
            props.lock_duration,
            props.max_delivery_count,
            props.forward_to or "-",
        ])
    _echo_table(["NAME", "STATUS", "SESSIONS", "LOCK(s)", "MAX DELIVERY", "FORWARD TO"], rows)


@queue.command("show")
@click.argument("name")
@CONFIG_OPTION
@click.pass_context
def show_queue(ctx, name: str, config_path: Optional[Path]):
    """
    Show a queue's properties and message counts.

    Example:
        localbus queue show inference-requests --config localbus.yaml
    """
    config = _load_config(ctx, config_path)

    async def do_show():
        backend = await _provisioned_backend(config)
        return await backend.get_queue(name), await backend.get_queue_runtime_properties(name)

    description, runtime = _run(do_show(), "Cannot show queue")

    click.echo(f"Queue: {description.name}")
    click.echo()
    click.echo("Properties:")
    properties = description.properties.model_dump()
    properties["status"] = _status(description.properties.status)
    _echo_properties(properties)
    click.echo()
    click.echo("Messages:")
    _echo_properties(runtime.model_dump(exclude={"name"}))


# ========== Topic Commands ==========

@cli.group()
def topic():
    """Inspect the topics and subscriptions a configuration provisions."""
    pass


@topic.command("list")
@CONFIG_OPTION
@click.pass_context
def list_topics(ctx, config_path: Optional[Path]):
    """
    List topics.

    Example:
        localbus topic list --config localbus.yaml
    """
    config = _load_config(ctx, config_path)

    async def do_list():
        backend = await _provisioned_backend(config)
        return [
            (description, await backend.get_topic_runtime_properties(description.name))
            for description in await backend.list_topics()
        ]

    topics = _run(do_list())
    if not topics:
        click.echo("No topics found.")
        return

    rows = [
        [
            description.name,
            _status(description.properties.status),
            runtime.subscription_count,
            "yes" if description.properties.requires_duplicate_detection else "no",
        ]
        for description, runtime in topics
    ]
    _echo_table(["NAME", "STATUS", "SUBSCRIPTIONS", "DUPLICATE DETECTION"], rows)


@topic.command("show")
@click.argument("name")
@CONFIG_OPTION
@click.pass_context
def show_topic(ctx, name: str, config_path: Optional[Path]):
    """
    Show a topic with its subscriptions and their rules.

    Example:
        localbus topic show inference-results --config localbus.yaml
    """
    config = _load_config(ctx, config_path)

    async def do_show():
        backend = await _provisioned_backend(config)
        return await backend.get_topic(name), await backend.list_subscriptions(name)

    description, subscriptions = _run(do_show(), "Cannot show topic")

    click.echo(f"Topic: {description.name}")
    click.echo()
    click.echo("Properties:")
    properties = description.properties.model_dump()
    properties["status"] = _status(description.properties.status)
    _echo_properties(properties)
    click.echo()

    if not subscriptions:
        click.echo("No subscriptions.")
        return

    click.echo(f"Subscriptions ({len(subscriptions)}):")
    for subscription in subscriptions:
        props = subscription.properties
        session = ", sessions" if props.requires_session else ""
        click.echo(f"  • {subscription.subscription_name} ({_status(props.status)}{session})")
        for rule in subscription.rules:
            action = f"  [action: {rule.action.sql_expression}]" if rule.action else ""
            click.echo(f"      {rule.name}: {_describe_filter(rule)}{action}")


# ========== Walkthrough ==========

@cli.command()
@CONFIG_OPTION
@click.option("--json", "as_json", is_flag=True, help="Print the raw results as JSON")
@click.pass_context
def walkthrough(ctx, config_path: Optional[Path], as_json: bool):
    """
    Run the Service Bus course flows against an in-memory namespace.

    Sends inference requests, processes them with peek-lock (dead-lettering
    the malformed one), inspects the dead-letter queue, fans results out to
    topic subscriptions, then exercises sessions, scheduled and deferred
    messages.

    Examples:
        localbus walkthrough
        localbus walkthrough --config localbus.yaml --json
    """
    config = _load_config(ctx, config_path)

    results = _run(run_walkthrough(config), "Walkthrough failed")

    if as_json:
        click.echo(json.dumps(results, indent=2, default=str))
        return

    click.echo("1. Send messages")
    for item in results["send"]:
        click.echo(f"   {item['correlation_id']}: {item['type']} ({item['status']})")

    click.echo("2. Process messages (peek-lock)")
    for item in results["process"]:
        click.echo(f"   {item['correlation_id']}: {item['status']}")

    click.echo("3. Dead-letter queue")
    for item in results["dead_letter"]:
        click.echo(f"   {item['correlation_id']}: {item['dead_letter_reason']} - {item['error_description']}"
                   f" (deliveries: {item['delivery_count']})")

    click.echo("4. Topic fan-out")
    topic_results = results["topic"]
    click.echo(f"   sent:          {len(topic_results['sent'])}")
    click.echo(f"   notifications: {[m['document_id'] for m in topic_results['notifications']]}")
    click.echo(f"   high-priority: {[m['document_id'] for m in topic_results['high_priority']]}")

    click.echo("5. Sessions")
    for session_id, session in results["sessions"]["sessions"].items():
        click.echo(f"   {session_id}: {' -> '.join(session['steps'])} (state: {session['state']})")

    click.echo("6. Scheduled and deferred")
    scheduled = results["scheduled_and_deferred"]
    click.echo(f"   scheduled #{scheduled['scheduled']}, cancelled #{scheduled['cancelled']}")
    click.echo(f"   delivered: {scheduled['delivered']}")
    click.echo(f"   deferred then received: {scheduled['deferred']}")

    click.echo()
    click.echo("[OK] Walkthrough complete")


if __name__ == "__main__":
    cli()
