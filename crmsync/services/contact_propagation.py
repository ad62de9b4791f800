import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from crmsync.constants import DEFAULT_MIN_SYNC_INTERVAL_SEC
from crmsync.domain.exclusion import ContactSyncSettings, ExclusionPolicy
from crmsync.domain.helpers import domain_of, domain_to_company, name_from_address
from crmsync.domain.messages import unique_addresses
from crmsync.domain.models import Contact
from crmsync.errors import AuthExpired, ExternalServiceError, RateLimited
from crmsync.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

PROPAGATED_TAGS = ("auto-sync", "from-mailbox")


@dataclass
class PropagationReport:
    created: int = 0
    existed: int = 0
    errored: int = 0
    excluded: int = 0
    failed_batches: int = 0
    aborted: bool = False
    error: str | None = None

    @property
    def processed(self):
        return self.created + self.existed + self.errored


class ContactPropagator:
    """Creates provider contacts for people seen in mail who are not in the address book yet."""

    def __init__(self, gateway, settings=None, retry=None, sleep=None, clock=None, min_interval=DEFAULT_MIN_SYNC_INTERVAL_SEC):
        self.gateway = gateway
        self.settings = settings or ContactSyncSettings()
        self.policy = ExclusionPolicy(self.settings)
        self.retry = retry or RetryPolicy(sleep=sleep)
        self.min_interval = float(min_interval)
        self.last_report = None
        self._sleep = sleep
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._running = False
        self._last_started = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="contact-propagation")

    @staticmethod
    def _sender_names(messages):
        names = {}
        for message in messages or []:
            address = (message.sender_address or "").lower()
            if address and message.sender_name and address not in names:
                names[address] = message.sender_name
        return names

    def _new_contact(self, address, names):
        return Contact(
            email=address,
            name=names.get(address) or name_from_address(address),
            company=domain_to_company(domain_of(address)),
            tags=set(PROPAGATED_TAGS),
            provenance={"message"},
        )

    def propagate(self, messages):
        """Create missing contacts for addresses in ``messages``. Returns a PropagationReport."""
        report = PropagationReport()
        addresses = unique_addresses(messages)
        candidates = self.policy.filter(addresses)
        report.excluded = len(addresses) - len(candidates)
        limit = max(0, int(self.settings.max_addresses))
        if len(candidates) > limit:
            logger.info("Limiting contact propagation to %s of %s addresses", limit, len(candidates))
            candidates = candidates[:limit]
        names = self._sender_names(messages)
        batch_size = max(1, int(self.settings.batch_size))

        for start in range(0, len(candidates), batch_size):
            if start:
                (self._sleep or time.sleep)(float(self.settings.delay_between_batches_sec))
            batch = candidates[start : start + batch_size]
            failures = 0
            for address in batch:
                try:
                    if self.retry.call(self.gateway.find_contact_by_email, address):
                        report.existed += 1
                        continue
                    self.retry.call(self.gateway.create_contact, self._new_contact(address, names))
                    report.created += 1
                except (RateLimited, AuthExpired) as exc:
                    logger.warning("Contact propagation aborted at %s: %s", address, exc)
                    report.errored += 1
                    report.aborted = True
                    report.error = str(exc)
                    return report
                except ExternalServiceError as exc:
                    logger.warning("Could not propagate contact %s: %s", address, exc)
                    report.errored += 1
                    failures += 1
            if failures == len(batch):
                report.failed_batches += 1

        logger.info(
            "Contact propagation: %s created, %s existed, %s errored, %s excluded",
            report.created,
            report.existed,
            report.errored,
            report.excluded,
        )
        return report

    def propagate_in_background(self, messages):
        """Schedule ``propagate`` on the worker thread. Returns a Future, or None when skipped."""
        if not self.settings.auto_sync_enabled:
            return None
        with self._lock:
            if self._running:
                logger.debug("Contact propagation already running")
                return None
            now = self._clock()
            if self._last_started is not None and now - self._last_started < self.min_interval:
                logger.debug("Contact propagation ran %.0fs ago; skipping", now - self._last_started)
                return None
            self._running = True
            self._last_started = now
        return self._executor.submit(self._run_background, list(messages or []))

    def _run_background(self, messages):
        try:
            report = self.propagate(messages)
            self.last_report = report
            return report
        except Exception:
            logger.exception("Background contact propagation failed")
            raise
        finally:
            with self._lock:
                self._running = False

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
