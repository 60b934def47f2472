"""CLI entry point for prometheus-sd."""
import asyncio
import sys
from urllib.parse import urlsplit, urlunsplit

import click
from pydantic import ValidationError as SettingsValidationError

from prometheus_sd import __version__
from prometheus_sd.config.settings import LOG_LEVELS, Settings, get_settings
from prometheus_sd.exceptions import PrometheusSDError
from prometheus_sd.logging.logger import configure_logging, get_logger
from prometheus_sd.redis_client import RedisRegistryStore
from prometheus_sd.resilience.retry import ResilientConnector
from prometheus_sd.service_discovery.discovery import DiscoveryLoop
from prometheus_sd.service_discovery.notifier import ChangeNotifier
from prometheus_sd.service_discovery.registry import RegistrationManager
from prometheus_sd.utils.graceful_shutdown import GracefulShutdown

logger = get_logger("prometheus-sd")

# -h is taken by --host
CONTEXT_SETTINGS = {"help_option_names": ["-?", "--help"]}

DISCOVER_HELP = """Discover services in the environment.

This is a long-running process that will continuously monitor Redis for the
registration of new services and, upon any modifications to the service
registry, write the services as JSON to an output path where it can be picked
up by Prometheus' file-based discovery process.
"""


def redact_url(url: str) -> str:
    """Hide the password part of a Redis URL for logging"""
    parts = urlsplit(url)
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


def _open_store(settings: Settings) -> RedisRegistryStore:
    return RedisRegistryStore.from_url(
        settings.REDIS_URL,
        registry_key=settings.REGISTRY_KEY,
        connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        health_check_interval=settings.REDIS_HEALTH_CHECK_INTERVAL,
    )


def _run(coro) -> None:
    """Run a subcommand coroutine, exiting 1 on any prometheus-sd error"""
    try:
        asyncio.run(coro)
    except PrometheusSDError as e:
        error = e.to_dict()
        logger.error(error.pop("message"), **error)
        sys.exit(1)


# ---------------------------------------------------------------------------
# subcommand implementations
# ---------------------------------------------------------------------------

async def run_register(settings: Settings, service_key, host, port, job_name, metrics_path, labels):
    store = _open_store(settings)
    try:
        manager = RegistrationManager(
            store,
            ResilientConnector.from_settings(settings),
            ChangeNotifier(store, settings.CHANGE_CHANNEL),
        )
        await manager.register(
            service_key,
            host=host,
            port=port,
            job_name=job_name,
            metrics_path=metrics_path,
            labels=labels,
        )
    finally:
        await store.close()


async def run_unregister(settings: Settings, service_key, host):
    store = _open_store(settings)
    try:
        manager = RegistrationManager(
            store,
            ResilientConnector.from_settings(settings),
            ChangeNotifier(store, settings.CHANGE_CHANNEL),
        )
        await manager.unregister(service_key, host=host)
    finally:
        await store.close()


async def run_discover(settings: Settings, output):
    store = _open_store(settings)
    connector = ResilientConnector.from_settings(settings)
    discovery = DiscoveryLoop(
        store,
        ChangeNotifier(store, settings.CHANGE_CHANNEL),
        connector,
        output,
        reconcile_interval=settings.RECONCILE_INTERVAL,
    )
    shutdown = GracefulShutdown()
    shutdown.register_handler(store.close)

    async def serve():
        await connector.call(store.ping)
        logger.info("Connected to Redis", url=redact_url(settings.REDIS_URL))
        await discovery.run()

    task = asyncio.create_task(serve())
    shutdown.setup_signal_handlers(task)
    try:
        await task
    except asyncio.CancelledError:
        if not shutdown.is_shutting_down:
            raise
    finally:
        await shutdown.shutdown()


# ---------------------------------------------------------------------------
# click commands
# ---------------------------------------------------------------------------

@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(version=__version__, prog_name="prometheus-sd")
@click.option(
    "-r", "--redis-url", envvar="PROMETHEUS_SD_REDIS_URL", metavar="TEXT",
    help="URL for Redis server (default 'redis://localhost:6379')",
)
@click.option(
    "-t", "--max-timeout", envvar="PROMETHEUS_SD_REDIS_TIMEOUT", type=click.IntRange(min=0),
    metavar="NUMBER",
    help="Maximum time in seconds to keep retrying Redis (default 28800 = 8 hours)",
)
@click.option(
    "--log-level", envvar="PROMETHEUS_SD_LOG_LEVEL",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Log level (default INFO)",
)
@click.pass_context
def main(ctx, redis_url, max_timeout, log_level):
    """Simple Redis-based service discovery for Prometheus.

    Every service instance registers itself with the `register` subcommand.
    The `discover` subcommand runs next to the Prometheus server and keeps a
    file_sd JSON file up to date with the registry.
    """
    try:
        settings = get_settings()
    except SettingsValidationError as e:
        raise click.UsageError(f"Invalid configuration: {e}")

    overrides = {}
    if redis_url is not None:
        overrides["REDIS_URL"] = redis_url
    if max_timeout is not None:
        overrides["REDIS_TIMEOUT"] = max_timeout
    if log_level is not None:
        overrides["LOG_LEVEL"] = log_level.upper()
    ctx.obj = settings.model_copy(update=overrides)

    configure_logging(ctx.obj.LOG_LEVEL, ctx.obj.LOG_JSON)


@main.command()
@click.argument("service_key")
@click.option("-j", "--job-name", metavar="TEXT", help="Job name for the given service. Defaults to the service key.")
@click.option(
    "-l", "--label", "labels", nargs=2, multiple=True, metavar="KEY VALUE",
    help="Labels to add to the service instance. Can be specified multiple times.",
)
@click.option("-m", "--metrics-path", metavar="TEXT", help="Metrics path for the service. Defaults to /metrics.")
@click.option("-h", "--host", required=True, metavar="TEXT", help="Hostname for the service.")
@click.option("-p", "--port", required=True, type=int, metavar="INTEGER", help="Port the metrics are exported at.")
@click.pass_obj
def register(settings, service_key, job_name, labels, metrics_path, host, port):
    """Register a new service instance in the environment."""
    _run(run_register(settings, service_key, host, port, job_name, metrics_path, dict(labels)))


@main.command()
@click.argument("service_key")
@click.option("-h", "--host", metavar="TEXT", help="Only remove the service if its host starts with this.")
@click.pass_obj
def unregister(settings, service_key, host):
    """Remove a service instance from the environment."""
    _run(run_unregister(settings, service_key, host))


@main.command(help=DISCOVER_HELP, short_help="Discover services in the environment.")
@click.option(
    "-o", "--output", required=True, type=click.Path(dir_okay=False, writable=True),
    help="File to write the service definitions to",
)
@click.pass_obj
def discover(settings, output):
    _run(run_discover(settings, output))
