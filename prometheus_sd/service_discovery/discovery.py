"""
Discovery Loop

Keeps a Prometheus file_sd document in sync with the shared registry.

Two cooperative tasks share a trigger queue:

    watcher  owns the Redis subscription. It (re)subscribes through the
             ResilientConnector, queues SUBSCRIBED after every successful
             subscription and CHANGED for every notification, and starts
             over whenever the subscription is lost.
    syncer   owns fetch/compare/write. It waits for a trigger (or queues a
             RECONCILE itself after `reconcile_interval` seconds of silence),
             fetches the full registry, renders it canonically and replaces
             the output file only when the bytes differ from the last write.

Notifications lost while disconnected are made up for by the SUBSCRIBED
trigger: every (re)subscription is followed by a full fetch. Subscribing and
that first fetch run as one unit under the connector, so a registry that
stays unreadable is retried with backoff and eventually gives up with
ConnectionTimeoutError instead of resubscribing in a tight loop.

Usage:
    loop = DiscoveryLoop(store, notifier, connector, "/etc/prometheus/sd/services.json")
    await loop.run()    # until cancelled
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

from prometheus_sd.exceptions import StoreError
from prometheus_sd.logging.logger import get_logger
from prometheus_sd.models.service import ServiceEntry, render_target_groups
from prometheus_sd.redis_client import RegistryStore, Subscription
from prometheus_sd.resilience.retry import ResilientConnector
from prometheus_sd.service_discovery.notifier import ChangeNotifier
from prometheus_sd.utils.atomic_file import AtomicFileWriter

logger = get_logger(__name__)


class DiscoveryState(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    IDLE = "idle"
    FETCHING = "fetching"
    COMPARING = "comparing"
    WRITING = "writing"


class Trigger(str, Enum):
    """Why the syncer runs a cycle"""
    SUBSCRIBED = "subscribed"
    CHANGED = "changed"
    RECONCILE = "reconcile"


@dataclass
class DiscoveryOutputState:
    """Last document successfully written to the output file"""
    last_written: Optional[bytes] = None
    written_at: Optional[float] = None

    def matches(self, payload: bytes) -> bool:
        return self.last_written == payload

    def record(self, payload: bytes) -> None:
        self.last_written = payload
        self.written_at = time.time()


class DiscoveryLoop:
    """Mirrors the registry into an output file until cancelled"""

    def __init__(
        self,
        store: RegistryStore,
        notifier: ChangeNotifier,
        connector: ResilientConnector,
        output_path: Union[str, Path],
        writer: Optional[AtomicFileWriter] = None,
        reconcile_interval: float = 300.0
    ):
        self.store = store
        self.notifier = notifier
        self.connector = connector
        self.output_path = Path(output_path)
        self.writer = writer or AtomicFileWriter()
        self.reconcile_interval = reconcile_interval

        self.state = DiscoveryState.CONNECTING
        self.output_state = DiscoveryOutputState()
        self.cycles = 0

        self._triggers: asyncio.Queue = asyncio.Queue()
        self._reconnect = asyncio.Event()
        # registry read together with the latest subscription
        self._snapshot: Optional[List[ServiceEntry]] = None

    def _set_state(self, state: DiscoveryState) -> None:
        if state is not self.state:
            logger.debug("Discovery state", previous=self.state.value, state=state.value)
            self.state = state

    async def run(self) -> None:
        """
        Run watcher and syncer until cancelled.

        Raises:
            ConnectionTimeoutError: the store stayed unreachable past the retry ceiling
        """
        logger.info(
            "Starting service discovery",
            output=str(self.output_path),
            channel=self.notifier.channel,
        )
        tasks = {
            asyncio.create_task(self._watch_registry(), name="registry-watcher"),
            asyncio.create_task(self._sync_output(), name="output-syncer"),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                task.result()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # watcher
    # ------------------------------------------------------------------

    async def _watch_registry(self) -> None:
        while True:
            self._set_state(DiscoveryState.CONNECTING)
            subscription, entries = await self.connector.call(self._subscribe_and_fetch)
            self._reconnect.clear()
            self._set_state(DiscoveryState.SUBSCRIBED)
            self._snapshot = entries
            self._triggers.put_nowait(Trigger.SUBSCRIBED)
            try:
                await self._forward_until_lost(subscription)
            finally:
                await subscription.close()

    async def _subscribe_and_fetch(self) -> Tuple[Subscription, List[ServiceEntry]]:
        """
        Subscribe, then read the full registry.

        Raises:
            StoreError: either step failed; the subscription is released
        """
        subscription = await self.notifier.subscribe()
        try:
            entries = await self.store.fetch_all()
        except BaseException:
            await subscription.close()
            raise
        return subscription, entries

    async def _forward_until_lost(self, subscription: Subscription) -> None:
        forward = asyncio.create_task(self._forward_events(subscription))
        reconnect = asyncio.create_task(self._reconnect.wait())
        try:
            await asyncio.wait({forward, reconnect}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            forward.cancel()
            reconnect.cancel()
            outcome, _ = await asyncio.gather(forward, reconnect, return_exceptions=True)

        if isinstance(outcome, BaseException) and not isinstance(
            outcome, (StoreError, asyncio.CancelledError)
        ):
            raise outcome

        if self._reconnect.is_set():
            logger.info("Reconnecting after registry fetch failure")
        elif isinstance(outcome, StoreError):
            logger.warning("Lost registry subscription, reconnecting", error=outcome.message)
        else:
            logger.warning("Registry subscription ended, reconnecting")

    async def _forward_events(self, subscription: Subscription) -> None:
        async for event in subscription.events():
            logger.debug("Registry change notification", channel=event.channel)
            self._triggers.put_nowait(Trigger.CHANGED)

    def _request_reconnect(self) -> None:
        self._set_state(DiscoveryState.CONNECTING)
        self._reconnect.set()

    # ------------------------------------------------------------------
    # syncer
    # ------------------------------------------------------------------

    async def _sync_output(self) -> None:
        while True:
            trigger = await self._next_trigger()
            entries, self._snapshot = self._snapshot, None
            await self.sync_once(trigger, entries)

    async def _next_trigger(self) -> Trigger:
        if self.state is not DiscoveryState.CONNECTING:
            self._set_state(DiscoveryState.IDLE)
        try:
            trigger = await asyncio.wait_for(self._triggers.get(), timeout=self.reconcile_interval)
        except asyncio.TimeoutError:
            trigger = Trigger.RECONCILE

        # a burst of notifications needs only one fetch
        while not self._triggers.empty():
            pending = self._triggers.get_nowait()
            if pending is Trigger.SUBSCRIBED:
                trigger = pending
            elif trigger is Trigger.SUBSCRIBED:
                # the snapshot may predate this change
                self._snapshot = None
        return trigger

    async def sync_once(
        self,
        trigger: Trigger = Trigger.RECONCILE,
        entries: Optional[List[ServiceEntry]] = None
    ) -> bool:
        """
        Rewrite the output file if the registry changed.

        `entries` is a registry snapshot that was just read; without one the
        registry is fetched. Store failures request a reconnect, whose
        subscribe-and-fetch runs under backoff; write failures are logged and
        retried on the next trigger. Neither is raised.

        Returns:
            True if the output file was written
        """
        try:
            if entries is None:
                self._set_state(DiscoveryState.FETCHING)
                try:
                    entries = await self.store.fetch_all()
                except StoreError as e:
                    logger.error(
                        "Fetching registry failed, reconnecting",
                        trigger=trigger.value,
                        error=e.message,
                    )
                    self._request_reconnect()
                    return False

            self._set_state(DiscoveryState.COMPARING)
            payload = render_target_groups(entries)
            if self.output_state.matches(payload):
                logger.debug("Registry unchanged", trigger=trigger.value, services=len(entries))
                return False

            self._set_state(DiscoveryState.WRITING)
            try:
                await asyncio.to_thread(self.writer.write, self.output_path, payload)
            except OSError as e:
                logger.error(
                    "Writing service file failed, retrying on next change",
                    path=str(self.output_path),
                    error=str(e),
                )
                return False

            self.output_state.record(payload)
            logger.info(
                "Wrote service discovery file",
                path=str(self.output_path),
                services=len(entries),
                trigger=trigger.value,
            )
            return True
        finally:
            self.cycles += 1
