"""
Service Registration

One-shot operations run by service instances (or their operators) to add
themselves to, or remove themselves from, the shared registry.
"""

from typing import Dict, Optional

from prometheus_sd.exceptions import NoSuchHostError, NoSuchServiceError
from prometheus_sd.logging.logger import get_logger
from prometheus_sd.models.service import ServiceEntry
from prometheus_sd.redis_client import RegistryStore
from prometheus_sd.resilience.retry import ResilientConnector
from prometheus_sd.service_discovery.notifier import ChangeNotifier

logger = get_logger(__name__)


class RegistrationManager:
    """
    Writes service entries into the registry and announces the change.

    Usage:
        manager = RegistrationManager(store, connector, ChangeNotifier(store))
        await manager.register(
            "node-exporter-web1",
            host="10.0.0.1",
            port=9100,
            labels={"env": "prod"},
        )

    A registration fully replaces any earlier entry with the same key, so
    running the same registration twice is harmless.
    """

    def __init__(
        self,
        store: RegistryStore,
        connector: ResilientConnector,
        notifier: ChangeNotifier
    ):
        self.store = store
        self.connector = connector
        self.notifier = notifier

    async def register(
        self,
        key: str,
        *,
        host: str,
        port: int,
        job_name: Optional[str] = None,
        metrics_path: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None
    ) -> ServiceEntry:
        """
        Register a service instance.

        Raises:
            ValidationError: invalid input, raised before touching the store
            ConnectionTimeoutError: store unreachable past the retry ceiling
        """
        entry = ServiceEntry.create(
            key=key,
            host=host,
            port=port,
            job_name=job_name,
            metrics_path=metrics_path,
            labels=labels,
        )

        await self.connector.call(self.store.upsert, entry)
        logger.info(
            "Registered service",
            key=entry.key,
            job=entry.job_name,
            target=entry.target,
        )

        await self.notifier.publish()
        return entry

    async def unregister(self, key: str, host: Optional[str] = None) -> ServiceEntry:
        """
        Remove a service instance.

        With `host`, the entry is only removed if its host starts with that
        prefix, which guards against removing an instance that has since been
        re-registered from another machine.

        Raises:
            NoSuchServiceError: nothing registered under `key`
            NoSuchHostError: the registered host does not match `host`
            ConnectionTimeoutError: store unreachable past the retry ceiling
        """
        entry = await self.connector.call(self.store.get, key)
        if entry is None:
            raise NoSuchServiceError(key)
        if host is not None and not entry.host.startswith(host):
            raise NoSuchHostError(key, host)

        removed = await self.connector.call(self.store.remove, key)
        if not removed:
            # deleted concurrently between get and remove
            raise NoSuchServiceError(key)

        logger.info("Unregistered service", key=key, target=entry.target)
        await self.notifier.publish()
        return entry
