"""
Change Notifier

Signals "the registry changed" to discovery processes over a Redis pub/sub
channel. Notifications carry no payload: receivers always re-read the full
registry instead of applying deltas.
"""
from prometheus_sd.exceptions import StoreError
from prometheus_sd.logging.logger import get_logger
from prometheus_sd.redis_client import RegistryStore, Subscription

logger = get_logger(__name__)

DEFAULT_CHANNEL = "prometheus_sd:changes"
REGISTRY_CHANGED = "registry_changed"


class ChangeNotifier:
    """Publish/subscribe access to the registry change channel"""

    def __init__(self, store: RegistryStore, channel: str = DEFAULT_CHANNEL):
        self.store = store
        self.channel = channel

    async def publish(self) -> bool:
        """
        Announce a registry change, fire-and-forget.

        Sent exactly once and never retried: nobody has to be listening, and a
        discovery process that misses it catches up on its next fetch. A
        failure is logged and reported through the return value, not raised.
        """
        try:
            receivers = await self.store.publish(self.channel, REGISTRY_CHANGED)
        except StoreError as e:
            logger.warning(
                "Could not publish registry change",
                channel=self.channel,
                error=e.message,
            )
            return False

        logger.debug("Published registry change", channel=self.channel, receivers=receivers)
        return True

    async def subscribe(self) -> Subscription:
        """
        Open a subscription to the change channel.

        Raises:
            StoreError: the subscription could not be established
        """
        subscription = await self.store.subscribe(self.channel)
        logger.info("Subscribed to registry changes", channel=self.channel)
        return subscription
