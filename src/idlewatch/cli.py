"""CLI entrypoint for idlewatch."""

import logging
import os
import sys

import click
from rich.console import Console
from rich.logging import RichHandler

from idlewatch.aws.cloudwatch import CloudWatchMetricSource
from idlewatch.config import SLACK_WEBHOOK_ENV, Settings
from idlewatch.dispatcher import AlertDispatcher
from idlewatch.formatter import format_json, format_markdown, format_table
from idlewatch.idle import IdleDetector
from idlewatch.integrations.slack import SlackAlertObserver
from idlewatch.models import Alert
from idlewatch.observers import ConsoleAlertObserver, LoggingAlertObserver
from idlewatch.repository import (
    InMemoryAlertRepository,
    InventoryError,
    dump_inventory,
    load_inventory,
)
from idlewatch.rules import RuleEvaluator
from idlewatch.strategies import STRATEGIES, get_strategy

FORMATTERS = {
    "table": format_table,
    "json": format_json,
    "markdown": format_markdown,
}


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _common_options(func):
    options = [
        click.option(
            "--inventory",
            required=True,
            type=click.Path(exists=True, dir_okay=False),
            help="JSON inventory of resources and rules.",
        ),
        click.option(
            "--format",
            "output_format",
            type=click.Choice(sorted(FORMATTERS)),
            default="table",
            help="Output format.",
        ),
        click.option("--region", default=None, help="AWS region for CloudWatch."),
        click.option(
            "--max-concurrent",
            type=click.IntRange(min=1),
            default=None,
            help="Max concurrent metric fetches.",
        ),
        click.option("--post-slack", is_flag=True, help="Post each new alert to Slack."),
        click.option(
            "--live", is_flag=True, help="Print each new alert to stderr as it is raised."
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        raise click.UsageError(f"Invalid IDLEWATCH_* setting: {e}") from e


def _load(inventory: str):
    try:
        return load_inventory(inventory)
    except InventoryError as e:
        raise click.UsageError(str(e)) from e


def _build_dispatcher(settings: Settings, post_slack: bool, live: bool) -> AlertDispatcher:
    dispatcher = AlertDispatcher(
        InMemoryAlertRepository(),
        observers=[LoggingAlertObserver()],
        deduplicate=settings.deduplicate,
    )
    if live:
        dispatcher.register(ConsoleAlertObserver(Console(stderr=True)))
    if post_slack:
        webhook_url = os.environ.get(SLACK_WEBHOOK_ENV)
        if not webhook_url:
            click.echo(f"Error: {SLACK_WEBHOOK_ENV} env var not set.", err=True)
            sys.exit(2)
        try:
            dispatcher.register(SlackAlertObserver(webhook_url))
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(2)
    return dispatcher


def _finish(alerts: list[Alert], failures: list[str], output_format: str) -> None:
    click.echo(FORMATTERS[output_format](alerts, failures))
    if failures:
        click.echo(f"Failed to evaluate: {', '.join(failures)}", err=True)
        sys.exit(2)
    sys.exit(1 if alerts else 0)


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v, -vv).")
def main(verbose):
    """Detect idle cloud resources and evaluate governance rules."""
    _configure_logging(verbose)


@main.command()
@_common_options
@click.option(
    "--strategy",
    type=click.Choice(sorted(STRATEGIES)),
    default=None,
    help="Idle detection strategy (default from IDLEWATCH_STRATEGY or 'cpu').",
)
@click.option(
    "--lookback-days", type=click.IntRange(min=1), default=None, help="Days of metrics to average."
)
@click.option(
    "--write-back", is_flag=True, help="Write refreshed idle state back to the inventory."
)
def idle(
    inventory,
    output_format,
    region,
    max_concurrent,
    post_slack,
    live,
    strategy,
    lookback_days,
    write_back,
):
    """Refresh idle status of EC2, RDS and SageMaker resources."""
    settings = _load_settings()
    try:
        idle_strategy = get_strategy(strategy or settings.strategy)
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    resources, rule_repo = _load(inventory)
    dispatcher = _build_dispatcher(settings, post_slack, live)
    detector = IdleDetector(
        CloudWatchMetricSource(region=region or settings.region, timeout=settings.fetch_timeout),
        resources,
        dispatcher,
        strategy=idle_strategy,
        max_concurrent=max_concurrent or settings.max_concurrent,
    )

    reports = detector.run_all_idle_detection(
        lookback_days=lookback_days or settings.lookback_days,
        ec2_threshold=settings.ec2_cpu_threshold,
        rds_connection_threshold=settings.rds_connection_threshold,
        sagemaker_invocation_threshold=settings.sagemaker_invocation_threshold,
    )

    if write_back:
        dump_inventory(inventory, resources, rule_repo)

    alerts = [a for r in reports for a in r.alerts]
    failures = [f"{r.kind.value} {rid}" for r in reports for rid in r.failed]
    _finish(alerts, failures, output_format)


@main.command()
@_common_options
def rules(inventory, output_format, region, max_concurrent, post_slack, live):
    """Evaluate all active governance rules."""
    settings = _load_settings()
    resources, rule_repo = _load(inventory)
    dispatcher = _build_dispatcher(settings, post_slack, live)
    evaluator = RuleEvaluator(
        CloudWatchMetricSource(region=region or settings.region, timeout=settings.fetch_timeout),
        resources,
        rule_repo,
        dispatcher,
        max_concurrent=max_concurrent or settings.max_concurrent,
    )

    report = evaluator.evaluate_all_rules()

    failures = [f"rule {f.rule_id} {f.resource_id}".rstrip() for f in report.failures]
    _finish(report.alerts, failures, output_format)
