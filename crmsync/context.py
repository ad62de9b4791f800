import logging

from crmsync.infra.cache_store import MailboxStore
from crmsync.infra.config_store import Config
from crmsync.infra.graph_client import GraphClient
from crmsync.services.contact_propagation import ContactPropagator
from crmsync.services.mailbox_cache import MailboxCache
from crmsync.services.retry import RetryPolicy
from crmsync.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class SessionContext:
    """Everything wired for one signed-in mailbox owner. Discard with ``close()`` on sign-out."""

    def __init__(self, owner, config, gateway, store, orchestrator, propagator, cache):
        self.owner = owner
        self.config = config
        self.gateway = gateway
        self.store = store
        self.orchestrator = orchestrator
        self.propagator = propagator
        self.cache = cache
        self.closed = False

    @classmethod
    def create(cls, owner, config=None, db_path=None, gateway=None):
        config = config or Config()
        if config.load_error:
            logger.warning("Using default configuration: %s", config.load_error)
        if gateway is None:
            gateway = GraphClient(client_id=config.get("client_id") or None)
        store = MailboxStore(owner, db_path=db_path)
        orchestrator = SyncOrchestrator(gateway, store, config=config)
        propagator = ContactPropagator(
            gateway,
            settings=config.sync_settings(),
            retry=RetryPolicy.from_config(config),
            min_interval=config.get("min_sync_interval_sec", 30),
        )
        cache = MailboxCache.from_config(config, orchestrator, store, gateway, propagator=propagator)
        return cls(store.owner, config, gateway, store, orchestrator, propagator, cache)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.cache.close()
        self.propagator.close()
        close_gateway = getattr(self.gateway, "close", None)
        if callable(close_gateway):
            close_gateway()
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
