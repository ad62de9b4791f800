"""In-memory mailbox view with stale-while-revalidate refresh and subscriptions.

Readers always get the current snapshot immediately; a stale or empty snapshot
schedules one background refresh through the sync orchestrator. Subscribers
hear about loading-state changes right away, while data changes are coalesced
over a short debounce window.
"""

import dataclasses
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from crmsync.constants import DEFAULT_CACHE_TTL_SEC, DEFAULT_DEBOUNCE_MS, ESTIMATED_BYTES_PER_MESSAGE
from crmsync.domain.helpers import format_size
from crmsync.domain.models import CacheSnapshot
from crmsync.errors import ExternalServiceError, SyncError, ValidationError
from crmsync.services.sync_orchestrator import FULL

logger = logging.getLogger(__name__)

WARM_START_LIMIT = 500


class MailboxCache:
    def __init__(
        self,
        orchestrator,
        store,
        gateway,
        propagator=None,
        ttl=DEFAULT_CACHE_TTL_SEC,
        debounce_ms=DEFAULT_DEBOUNCE_MS,
        clock=None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.gateway = gateway
        self.propagator = propagator
        self.ttl = float(ttl)
        self.debounce_sec = max(0.0, float(debounce_ms) / 1000.0)
        self._clock = clock or time.time
        self._lock = threading.RLock()
        self._subscribers = {}
        self._pending_timer = None
        self._refresh_scheduled = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mailbox-refresh")
        self._snapshot = CacheSnapshot(
            emails=store.get_messages(limit=WARM_START_LIMIT),
            folders=store.get_folders(),
            contacts=store.get_contacts(),
        )

    @classmethod
    def from_config(cls, config, orchestrator, store, gateway, propagator=None, clock=None):
        return cls(
            orchestrator,
            store,
            gateway,
            propagator=propagator,
            ttl=config.get("cache_ttl_sec", DEFAULT_CACHE_TTL_SEC),
            debounce_ms=config.get("debounce_ms", DEFAULT_DEBOUNCE_MS),
            clock=clock,
        )

    # Subscriptions

    def _copy(self):
        with self._lock:
            snapshot = self._snapshot
            return dataclasses.replace(
                snapshot,
                emails=list(snapshot.emails),
                folders=list(snapshot.folders),
                contacts=list(snapshot.contacts),
            )

    def subscribe(self, subscriber_id, callback):
        """Register ``callback(snapshot)``; it is called once right away. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers[subscriber_id] = callback
        self._call(subscriber_id, callback, self._copy())

        def unsubscribe():
            with self._lock:
                if self._subscribers.get(subscriber_id) is callback:
                    del self._subscribers[subscriber_id]

        return unsubscribe

    @staticmethod
    def _call(subscriber_id, callback, snapshot):
        try:
            callback(snapshot)
        except Exception:
            logger.exception("Subscriber %s failed to handle snapshot", subscriber_id)

    def _deliver(self):
        with self._lock:
            self._pending_timer = None
            subscribers = list(self._subscribers.items())
        snapshot = self._copy()
        for subscriber_id, callback in subscribers:
            self._call(subscriber_id, callback, snapshot)

    def _notify(self, immediate=False):
        with self._lock:
            if immediate or not self.debounce_sec:
                if self._pending_timer is not None:
                    self._pending_timer.cancel()
                    self._pending_timer = None
            elif self._pending_timer is not None:
                return
            else:
                self._pending_timer = threading.Timer(self.debounce_sec, self._deliver)
                self._pending_timer.daemon = True
                self._pending_timer.start()
                return
        self._deliver()

    def flush(self):
        """Deliver any coalesced notification now."""
        with self._lock:
            timer, self._pending_timer = self._pending_timer, None
        if timer is not None:
            timer.cancel()
            self._deliver()

    def _set_loading(self, loading):
        with self._lock:
            if self._snapshot.is_loading == loading:
                return
            self._snapshot.is_loading = loading
        self._notify(immediate=True)

    # Reads

    def get_snapshot(self, force_refresh=False):
        """Return the current snapshot; schedule a background refresh when it is stale, empty or forced."""
        with self._lock:
            snapshot = self._snapshot
            needs_refresh = force_refresh or not snapshot.fetched_at or snapshot.is_stale(self.ttl, self._clock())
        if needs_refresh:
            self._schedule_refresh(force_refresh)
        return self._copy()

    def _schedule_refresh(self, force_refresh):
        with self._lock:
            if self._refresh_scheduled:
                return None
            self._refresh_scheduled = True
        return self._executor.submit(self._background_refresh, force_refresh)

    def _background_refresh(self, force_refresh):
        try:
            return self.refresh(force_refresh)
        finally:
            with self._lock:
                self._refresh_scheduled = False

    def refresh(self, force_refresh=False):
        """Sync now. Failures keep the last good data and set ``last_error``."""
        with self._lock:
            never_fetched = not self._snapshot.fetched_at
        self._set_loading(True)
        try:
            if force_refresh or never_fetched:
                result = self.orchestrator.full_sync(force=force_refresh)
            else:
                result = self.orchestrator.incremental_sync()
        except SyncError as exc:
            logger.warning("Mailbox refresh failed: %s", exc)
            with self._lock:
                self._snapshot.last_error = str(exc)
        else:
            if result.reused:
                # Already applied; local mutations since then must survive.
                self._keep_current(result)
            else:
                self._apply_result(result)
                if self.propagator is not None and result.emails:
                    self.propagator.propagate_in_background(result.emails)
        finally:
            self._set_loading(False)
        return self._copy()

    def _apply_result(self, result):
        with self._lock:
            snapshot = self._snapshot
            if result.kind == FULL:
                snapshot.emails = list(result.emails)
                snapshot.contacts = list(result.contacts)
            else:
                removed = set(result.deleted_ids)
                by_id = {m.id: m for m in snapshot.emails if m.id not in removed}
                for message in result.emails:
                    by_id[message.id] = message
                snapshot.emails = sorted(by_id.values(), key=lambda m: m.received_at or "", reverse=True)
                by_email = {c.email: c for c in snapshot.contacts}
                for contact in result.contacts:
                    by_email[contact.email] = contact
                snapshot.contacts = list(by_email.values())
            snapshot.folders = list(result.folders)
            snapshot.fetched_at = self._clock()
            snapshot.last_error = None

    def _keep_current(self, result):
        logger.debug("Sync result from the last %s run reused; keeping current snapshot", result.kind)
        with self._lock:
            snapshot = self._snapshot
            if not snapshot.folders:
                snapshot.folders = list(result.folders)
            if not snapshot.fetched_at:
                snapshot.fetched_at = self._clock()
            snapshot.last_error = None

    def search_messages(self, query, folder_key=None, limit=100):
        if not self.store.degraded:
            return self.store.search_messages(query, folder_key=folder_key, limit=limit)
        needle = (query or "").strip().lower()
        if not needle:
            return []
        matches = []
        for message in self._copy().emails:
            if folder_key and message.folder_key != folder_key:
                continue
            haystack = (message.subject, message.preview, message.sender_name, message.sender_address)
            if any(needle in (value or "").lower() for value in haystack):
                matches.append(message)
                if limit is not None and len(matches) >= limit:
                    break
        return matches

    def get_cache_stats(self):
        if not self.store.degraded:
            return self.store.get_cache_stats()
        snapshot = self._copy()
        size_bytes = len(snapshot.emails) * ESTIMATED_BYTES_PER_MESSAGE
        last_sync = None
        if snapshot.fetched_at:
            last_sync = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(snapshot.fetched_at))
        return {
            "total_messages": len(snapshot.emails),
            "total_folders": len(snapshot.folders),
            "last_sync": last_sync,
            "cache_size": format_size(size_bytes),
            "cache_size_bytes": size_bytes,
            "degraded": True,
        }

    # Optimistic mutations

    def _find(self, message_id):
        for idx, message in enumerate(self._snapshot.emails):
            if message.id == message_id:
                return idx, message
        return None, None

    def _replace(self, message_id, **changes):
        """Swap in an updated copy of a snapshot message. Returns the previous copy."""
        with self._lock:
            idx, message = self._find(message_id)
            if message is None:
                return None
            self._snapshot.emails[idx] = dataclasses.replace(message, **changes)
            return message

    def _restore(self, message_id, previous):
        with self._lock:
            idx, _ = self._find(message_id)
            if idx is not None:
                self._snapshot.emails[idx] = previous
        self._notify()

    def mark_read(self, message_id, is_read=True):
        previous = self._replace(message_id, is_read=bool(is_read))
        self._notify()
        try:
            self.gateway.mark_read(message_id, is_read)
        except ExternalServiceError:
            if previous is not None:
                self._restore(message_id, previous)
            raise
        self.store.update_message_status(message_id, {"is_read": bool(is_read)})
        return True

    def toggle_star(self, message_id):
        with self._lock:
            _, message = self._find(message_id)
        if message is None:
            message = self.store.get_message(message_id)
        if message is None:
            raise ValidationError(f"Unknown message: {message_id}")
        flagged = not message.is_flagged
        previous = self._replace(message_id, is_flagged=flagged)
        self._notify()
        try:
            self.gateway.set_flag(message_id, flagged)
        except ExternalServiceError:
            if previous is not None:
                self._restore(message_id, previous)
            raise
        self.store.update_message_status(message_id, {"is_flagged": flagged})
        return flagged

    def _trash_folder(self):
        trash_id = self.orchestrator.trash_folder_id
        if not trash_id:
            return None
        with self._lock:
            for folder in self._snapshot.folders:
                if folder.id == trash_id:
                    return folder
        return None

    def delete_message(self, message_id):
        """Move a message to the trash folder, or delete it outright when there is none or it is already there."""
        trash = self._trash_folder()
        with self._lock:
            idx, message = self._find(message_id)
        if trash is not None and (message is None or message.folder_key != trash.key):
            return self._move_to_trash(message_id, trash)

        if message is not None:
            with self._lock:
                self._snapshot.emails.pop(idx)
            self._notify()
        try:
            self.gateway.delete_message(message_id)
        except ExternalServiceError:
            if message is not None:
                with self._lock:
                    self._snapshot.emails.insert(min(idx, len(self._snapshot.emails)), message)
                self._notify()
            raise
        self.store.delete_message(message_id)
        return "deleted"

    def _move_to_trash(self, message_id, trash):
        previous = self._replace(message_id, folder_key=trash.key)
        self._notify()
        try:
            payload = self.gateway.move_message(message_id, trash.id)
        except ExternalServiceError:
            if previous is not None:
                self._restore(message_id, previous)
            raise
        new_id = (payload or {}).get("id") or message_id
        if new_id == message_id:
            self.store.move_message(message_id, trash.key)
            return "moved"

        # The provider re-keys moved messages; follow the new id.
        moved = self._replace(message_id, id=new_id)
        stored = self.store.get_message(message_id) or moved
        self.store.delete_message(message_id)
        if stored is not None:
            self.store.upsert_messages([dataclasses.replace(stored, id=new_id, folder_key=trash.key)])
        self._notify()
        return "moved"

    def close(self):
        with self._lock:
            timer, self._pending_timer = self._pending_timer, None
            self._subscribers.clear()
        if timer is not None:
            timer.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)
