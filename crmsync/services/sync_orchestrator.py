import logging
import sqlite3
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone

from crmsync.constants import (
    DEFAULT_MAX_MESSAGES_PER_FOLDER,
    DEFAULT_MAX_PAGES,
    DEFAULT_MAX_WORKERS,
    DEFAULT_MIN_SYNC_INTERVAL_SEC,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SYNC_INTERVAL_MINUTES,
)
from crmsync.domain.contacts import (
    SOURCE_CONTACT,
    SOURCE_PERSON,
    SOURCE_USER,
    apply_interactions,
    contacts_from_messages,
    merge_all,
    merge_contacts,
    normalize_contacts,
)
from crmsync.domain.exclusion import ExclusionPolicy
from crmsync.domain.folders import find_trash_folder, normalize_folders
from crmsync.domain.helpers import format_timestamp
from crmsync.domain.messages import latest_interactions, normalize_message
from crmsync.domain.models import SyncStatus
from crmsync.errors import ExternalServiceError, SyncError, ValidationError

logger = logging.getLogger(__name__)

FULL = "full"
INCREMENTAL = "incremental"

# resource type -> contact source kind
CONTACT_SOURCES = {
    "contacts": SOURCE_CONTACT,
    "people": SOURCE_PERSON,
    "users": SOURCE_USER,
}


@dataclass
class SyncResult:
    kind: str
    emails: list = field(default_factory=list)
    folders: list = field(default_factory=list)
    contacts: list = field(default_factory=list)
    deleted_ids: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    skipped: int = 0
    duration_ms: int = 0
    finished_at: datetime | None = None
    # True when served from the last run inside the minimum interval
    reused: bool = False

    @property
    def partial(self):
        return bool(self.errors)


def _utcnow():
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Pulls folders, messages and contact sources for one owner into the store.

    At most one run is in flight at a time: callers arriving during a run wait
    for it and receive the same result (or the same ``SyncError``). A run that
    finished less than ``min_interval`` seconds ago is returned again instead
    of starting a new one unless ``force`` is given.
    """

    def __init__(self, gateway, store, config=None, clock=None, now=None):
        self.gateway = gateway
        self.store = store
        self.owner = store.owner
        get = config.get if config is not None else (lambda _key, default=None: default)
        self.min_interval = float(get("min_sync_interval_sec", DEFAULT_MIN_SYNC_INTERVAL_SEC))
        self.max_messages_per_folder = int(get("max_messages_per_folder", DEFAULT_MAX_MESSAGES_PER_FOLDER))
        self.page_size = int(get("page_size", DEFAULT_PAGE_SIZE))
        self.max_pages = int(get("max_pages", DEFAULT_MAX_PAGES))
        self.max_workers = max(1, int(get("max_workers", DEFAULT_MAX_WORKERS)))
        self.sync_interval_minutes = int(get("sync_interval_minutes", DEFAULT_SYNC_INTERVAL_MINUTES))
        self.source_page_sizes = dict(get("source_page_sizes", {}) or {})
        self.event_lookback_days = int(get("event_lookback_days", 30))
        self.policy = ExclusionPolicy(config.sync_settings() if config is not None else None)
        self._clock = clock or time.monotonic
        self._now = now or _utcnow

        self.state = "idle"
        self.trash_folder_id = None
        self.last_result = None
        self._last_finished = None
        self._inflight = None
        self._lock = threading.Lock()

    # Entry points

    def full_sync(self, force=False):
        return self._run(FULL, self._full_sync, force)

    def incremental_sync(self, force=False):
        return self._run(INCREMENTAL, self._incremental_sync, force)

    def is_sync_due(self):
        status = self.store.get_sync_status()
        if status is None:
            return True
        return status.is_due(self._now())

    def _run(self, kind, work, force):
        with self._lock:
            if self._inflight is not None:
                future, leader = self._inflight, False
            elif (
                not force
                and self.last_result is not None
                and self._clock() - self._last_finished < self.min_interval
            ):
                logger.debug("Sync requested within %.0fs of the last run; reusing result", self.min_interval)
                return replace(self.last_result, reused=True)
            else:
                future, leader = Future(), True
                self._inflight = future
                self.state = "syncing"

        if not leader:
            return future.result()

        started = self._clock()
        logger.info("Starting %s sync for %s", kind, self.owner)
        try:
            result = work()
        except Exception as exc:
            error = exc if isinstance(exc, SyncError) else SyncError(f"{kind} sync failed: {exc}")
            duration_ms = int((self._clock() - started) * 1000)
            logger.warning("%s sync for %s failed after %sms: %s", kind.capitalize(), self.owner, duration_ms, exc)
            self._record_status(kind, duration_ms, error=str(error))
            with self._lock:
                self._inflight = None
                self.state = "failed"
            future.set_exception(error)
            if error is exc:
                raise
            raise error from exc

        result.duration_ms = int((self._clock() - started) * 1000)
        result.finished_at = self._now()
        self._record_status(result.kind, result.duration_ms)
        logger.info(
            "Finished %s sync for %s: %s emails, %s folders, %s contacts, %s errors in %sms",
            result.kind,
            self.owner,
            len(result.emails),
            len(result.folders),
            len(result.contacts),
            len(result.errors),
            result.duration_ms,
        )
        with self._lock:
            self.last_result = result
            self._last_finished = self._clock()
            self._inflight = None
            self.state = "idle"
        future.set_result(result)
        return result

    def _record_status(self, kind, duration_ms, error=None):
        try:
            status = self.store.get_sync_status() or SyncStatus(
                owner=self.owner, sync_interval_minutes=self.sync_interval_minutes
            )
            status.mark_finished(self._now(), duration_ms, error=error, full=kind == FULL)
            if error is None:
                status.total_emails_cached = self.store.get_message_count()
                status.total_folders_cached = len(self.store.get_folders())
            self.store.save_sync_status(status)
        except sqlite3.Error as exc:
            logger.warning("Could not record sync status for %s: %s", self.owner, exc)

    # Full sync

    def _map_parallel(self, fn, items, key=None):
        """Run ``fn`` per item on the pool. Returns (results, errors), both keyed by ``key(item)``."""
        key = key or (lambda item: item)
        results = {}
        errors = {}
        if not items:
            return results, errors
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(items))) as executor:
            futures = {executor.submit(fn, item): key(item) for item in items}
            for future in as_completed(futures):
                item_key = futures[future]
                try:
                    results[item_key] = future.result()
                except Exception as exc:
                    errors[item_key] = exc
        return results, errors

    def _fetch_folders(self):
        try:
            records = self.gateway.fetch_all("folders", page_size=self.page_size, max_pages=self.max_pages)
        except ExternalServiceError as exc:
            raise SyncError(f"Folder discovery failed: {exc}") from exc
        folders = normalize_folders(records)
        trash = find_trash_folder(folders)
        self.trash_folder_id = trash.id if trash else None
        return folders

    def _fetch_folder_messages(self, folder):
        records = self.gateway.fetch_all(
            "messages",
            page_size=min(self.page_size, self.max_messages_per_folder),
            max_pages=self.max_pages,
            max_records=self.max_messages_per_folder,
            folder_id=folder.id,
        )
        return self._normalize_messages(records, folder.key)

    @staticmethod
    def _normalize_messages(records, folder_key):
        messages = []
        skipped = 0
        for record in records or []:
            try:
                messages.append(normalize_message(record, folder_key))
            except ValidationError:
                skipped += 1
        return messages, skipped

    def _fetch_source(self, resource_type):
        page_size = int(self.source_page_sizes.get(resource_type, self.page_size))
        if resource_type == "events":
            now = self._now()
            return self.gateway.fetch_all(
                "events",
                page_size=page_size,
                max_pages=self.max_pages,
                start=format_timestamp(now - timedelta(days=self.event_lookback_days)),
                end=format_timestamp(now),
            )
        return self.gateway.fetch_all(resource_type, page_size=page_size, max_pages=self.max_pages)

    def _full_sync(self):
        folders = self._fetch_folders()
        errors = []
        skipped = 0

        by_folder, folder_errors = self._map_parallel(self._fetch_folder_messages, folders, key=lambda f: f.id)
        emails = []
        for folder in folders:
            if folder.id in folder_errors:
                logger.warning("Folder %s failed to sync: %s", folder.display_name, folder_errors[folder.id])
                errors.append(f"{folder.display_name}: {folder_errors[folder.id]}")
                continue
            messages, bad = by_folder[folder.id]
            emails.extend(messages)
            skipped += bad
        if folders and len(folder_errors) == len(folders):
            raise SyncError(f"Every folder failed to sync: {'; '.join(errors)}")
        emails.sort(key=lambda m: m.received_at or "", reverse=True)

        sources = [*CONTACT_SOURCES, "events"]
        by_source, source_errors = self._map_parallel(self._fetch_source, sources)
        for resource_type, exc in source_errors.items():
            logger.warning("Source %s failed to sync: %s", resource_type, exc)
            errors.append(f"{resource_type}: {exc}")

        contacts = []
        for resource_type, source_kind in CONTACT_SOURCES.items():
            normalized, bad = normalize_contacts(by_source.get(resource_type), source_kind)
            contacts.extend(normalized)
            skipped += bad
        contacts.extend(contacts_from_messages(emails, self.policy))
        interactions = latest_interactions(emails, by_source.get("events"))
        merged = {contact.email: contact for contact in self.store.get_contacts()}
        for contact in merge_all(contacts):
            current = merged.get(contact.email)
            merged[contact.email] = contact if current is None else merge_contacts(current, contact)
        contacts = apply_interactions(list(merged.values()), interactions, self._now())

        self.store.upsert_folders(folders)
        self.store.upsert_messages(emails)
        self.store.upsert_contacts(contacts)

        return SyncResult(
            kind=FULL,
            emails=emails,
            folders=folders,
            contacts=contacts,
            errors=errors,
            skipped=skipped,
        )

    # Incremental sync

    def _sync_folder_delta(self, folder):
        delta_link = self.store.get_delta_link(folder.id)
        records = None
        deleted_ids = []
        new_delta_link = None
        if delta_link:
            records, new_delta_link, deleted_ids = self.gateway.fetch_delta(folder_id=folder.id, delta_link=delta_link)
            if records is None:
                logger.info("Delta link for %s expired; refetching recent messages", folder.display_name)
                self.store.clear_delta_link(folder.id)
        if records is None:
            records = self.gateway.fetch_all(
                "messages",
                page_size=min(self.page_size, self.max_messages_per_folder),
                max_pages=1,
                max_records=self.max_messages_per_folder,
                folder_id=folder.id,
            )
            _, new_delta_link, _ = self.gateway.fetch_delta(folder_id=folder.id)
            deleted_ids = []
        if new_delta_link:
            self.store.save_delta_link(folder.id, new_delta_link)
        messages, skipped = self._normalize_messages(records, folder.key)
        return messages, list(deleted_ids or []), skipped

    def _incremental_sync(self):
        folders = self.store.get_folders()
        if not folders:
            logger.info("No cached folders for %s; running a full sync instead", self.owner)
            return self._full_sync()
        if self.trash_folder_id is None:
            trash = find_trash_folder(folders)
            self.trash_folder_id = trash.id if trash else None

        by_folder, folder_errors = self._map_parallel(self._sync_folder_delta, folders, key=lambda f: f.id)
        emails = []
        deleted_ids = []
        errors = []
        skipped = 0
        for folder in folders:
            if folder.id in folder_errors:
                logger.warning("Folder %s failed to sync: %s", folder.display_name, folder_errors[folder.id])
                errors.append(f"{folder.display_name}: {folder_errors[folder.id]}")
                continue
            messages, removed, bad = by_folder[folder.id]
            emails.extend(messages)
            deleted_ids.extend(removed)
            skipped += bad
        if len(folder_errors) == len(folders):
            raise SyncError(f"Every folder failed to sync: {'; '.join(errors)}")
        emails.sort(key=lambda m: m.received_at or "", reverse=True)

        existing = {contact.email: contact for contact in self.store.get_contacts()}
        touched = []
        for derived in contacts_from_messages(emails, self.policy):
            current = existing.get(derived.email)
            touched.append(derived if current is None else merge_contacts(current, derived))
        touched = apply_interactions(touched, latest_interactions(emails), self._now())

        self.store.delete_messages(deleted_ids)
        self.store.upsert_messages(emails)
        self.store.upsert_contacts(touched)

        return SyncResult(
            kind=INCREMENTAL,
            emails=emails,
            folders=folders,
            contacts=touched,
            deleted_ids=deleted_ids,
            errors=errors,
            skipped=skipped,
        )
