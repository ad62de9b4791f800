import threading
from datetime import datetime, timezone

import pytest

from crmsync.domain.models import Folder, Message
from crmsync.errors import ExternalServiceError, SyncError, ValidationError
from crmsync.infra.cache_store import MailboxStore
from crmsync.services.mailbox_cache import MailboxCache
from crmsync.services.sync_orchestrator import FULL, INCREMENTAL, SyncOrchestrator, SyncResult

FOLDERS = [
    Folder(id="F-IN", key="inbox", display_name="Inbox", is_system=True, folder_type="inbox"),
    Folder(id="F-DEL", key="trash", display_name="Deleted Items", is_system=True, folder_type="trash"),
]
OLDER = "2026-05-29T09:00:00Z"


def _msg(msg_id, folder_key="inbox", subject="Hello", received="2026-05-30T09:00:00Z", **extra):
    return Message(
        id=msg_id,
        folder_key=folder_key,
        sender_name="Ann Smith",
        sender_address="ann@acme.com",
        subject=subject,
        received_at=received,
        **extra,
    )


class FakeOrchestrator:
    def __init__(self, result=None):
        self.result = result or SyncResult(kind=FULL, emails=[_msg("m1"), _msg("m2", received=OLDER)], folders=list(FOLDERS))
        self.incremental_result = None
        self.error = None
        self.trash_folder_id = "F-DEL"
        self.calls = []
        self.gate = None

    def full_sync(self, force=False):
        self.calls.append(("full", force))
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return self.result

    def incremental_sync(self, force=False):
        self.calls.append(("incremental", force))
        if self.error is not None:
            raise self.error
        return self.incremental_result or SyncResult(kind=INCREMENTAL, folders=list(FOLDERS))


class FakeGateway:
    def __init__(self):
        self.calls = []
        self.fail = False
        self.moved_id = None

    def _record(self, *call):
        self.calls.append(call)
        if self.fail:
            raise ExternalServiceError("provider down")

    def mark_read(self, message_id, is_read=True):
        self._record("mark_read", message_id, is_read)
        return True

    def set_flag(self, message_id, flagged):
        self._record("set_flag", message_id, flagged)
        return True

    def move_message(self, message_id, destination_folder_id):
        self._record("move", message_id, destination_folder_id)
        return {"id": self.moved_id or message_id}

    def delete_message(self, message_id):
        self._record("delete", message_id)
        return True


class FakePropagator:
    def __init__(self):
        self.batches = []

    def propagate_in_background(self, messages):
        self.batches.append(list(messages))


class FakeClock:
    def __init__(self):
        self.value = 5000.0

    def __call__(self):
        return self.value


def _store(tmp_path):
    return MailboxStore("owner@example.com", db_path=str(tmp_path / "cache.db"))


def _degraded_store(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = MailboxStore("owner@example.com", db_path=str(blocker / "cache.db"))
    assert store.degraded is True
    return store


def _cache(tmp_path, store=None, orchestrator=None, gateway=None, propagator=None, clock=None, debounce_ms=60000):
    store = store or _store(tmp_path)
    orchestrator = orchestrator or FakeOrchestrator()
    store.upsert_messages(orchestrator.result.emails)
    cache = MailboxCache(
        orchestrator,
        store,
        gateway or FakeGateway(),
        propagator=propagator,
        ttl=300,
        debounce_ms=debounce_ms,
        clock=clock or FakeClock(),
    )
    return cache


def _drain(cache):
    cache._executor.submit(lambda: None).result(5)


def _ids(snapshot):
    return [m.id for m in snapshot.emails]


def test_warm_start_serves_stored_messages(tmp_path):
    cache = _cache(tmp_path)
    try:
        snapshot = cache._copy()
        assert _ids(snapshot) == ["m1", "m2"]
        assert snapshot.fetched_at == 0
    finally:
        cache.close()


def test_subscribe_delivers_immediately_and_unsubscribes(tmp_path):
    cache = _cache(tmp_path, debounce_ms=0)
    seen = []
    try:
        unsubscribe = cache.subscribe("ui", seen.append)
        assert len(seen) == 1
        cache.mark_read("m1")
        assert len(seen) == 2
        unsubscribe()
        cache.mark_read("m2")
        assert len(seen) == 2
    finally:
        cache.close()


def test_data_changes_are_coalesced_until_flush(tmp_path):
    cache = _cache(tmp_path)
    seen = []
    try:
        cache.subscribe("ui", seen.append)
        cache.mark_read("m1")
        cache.mark_read("m2")
        assert len(seen) == 1

        cache.flush()
        assert len(seen) == 2
        assert all(m.is_read for m in seen[-1].emails)

        cache.flush()
        assert len(seen) == 2
    finally:
        cache.close()


def test_loading_changes_are_delivered_immediately(tmp_path):
    cache = _cache(tmp_path)
    seen = []
    try:
        cache.subscribe("ui", seen.append)
        cache.mark_read("m1")
        cache.refresh()
        assert [s.is_loading for s in seen] == [False, True, False]
        assert seen[-1].fetched_at == 5000.0
    finally:
        cache.close()


def test_failing_subscriber_does_not_block_others(tmp_path):
    cache = _cache(tmp_path, debounce_ms=0)
    seen = []

    def _broken(_snapshot):
        raise RuntimeError("boom")

    try:
        cache.subscribe("broken", _broken)
        cache.subscribe("ui", seen.append)
        cache.mark_read("m1")
        assert len(seen) == 2
    finally:
        cache.close()


def test_refresh_failure_keeps_last_good_snapshot(tmp_path):
    orchestrator = FakeOrchestrator()
    cache = _cache(tmp_path, orchestrator=orchestrator)
    try:
        cache.refresh()
        orchestrator.error = SyncError("provider down")

        snapshot = cache.refresh(force_refresh=True)

        assert _ids(snapshot) == ["m1", "m2"]
        assert snapshot.last_error == "provider down"
        assert snapshot.is_loading is False

        orchestrator.error = None
        assert cache.refresh(force_refresh=True).last_error is None
    finally:
        cache.close()


def test_get_snapshot_schedules_single_background_refresh(tmp_path):
    orchestrator = FakeOrchestrator()
    orchestrator.gate = threading.Event()
    cache = _cache(tmp_path, orchestrator=orchestrator)
    try:
        first = cache.get_snapshot()
        cache.get_snapshot()
        cache.get_snapshot()
        orchestrator.gate.set()
        _drain(cache)

        assert _ids(first) == ["m1", "m2"]
        assert orchestrator.calls == [("full", False)]
        assert cache.get_snapshot().fetched_at == 5000.0
        _drain(cache)
        assert orchestrator.calls == [("full", False)]
    finally:
        cache.close()


def test_stale_snapshot_triggers_incremental_refresh(tmp_path):
    clock = FakeClock()
    orchestrator = FakeOrchestrator()
    cache = _cache(tmp_path, orchestrator=orchestrator, clock=clock)
    try:
        cache.refresh()
        clock.value += 299
        cache.get_snapshot()
        _drain(cache)
        assert orchestrator.calls == [("full", False)]

        clock.value += 1
        cache.get_snapshot()
        _drain(cache)
        assert orchestrator.calls == [("full", False), ("incremental", False)]

        cache.get_snapshot(force_refresh=True)
        _drain(cache)
        assert orchestrator.calls[-1] == ("full", True)
    finally:
        cache.close()


def test_incremental_result_is_merged_into_snapshot(tmp_path):
    orchestrator = FakeOrchestrator()
    cache = _cache(tmp_path, orchestrator=orchestrator)
    try:
        cache.refresh()
        orchestrator.incremental_result = SyncResult(
            kind=INCREMENTAL,
            emails=[_msg("m3", received="2026-06-01T09:00:00Z"), _msg("m2", subject="Edited", received=OLDER)],
            deleted_ids=["m1"],
            folders=list(FOLDERS),
        )

        snapshot = cache.refresh()

        assert _ids(snapshot) == ["m3", "m2"]
        assert snapshot.emails[1].subject == "Edited"
    finally:
        cache.close()


def test_refresh_hands_messages_to_propagator(tmp_path):
    propagator = FakePropagator()
    cache = _cache(tmp_path, propagator=propagator)
    try:
        cache.refresh()
        assert [[m.id for m in batch] for batch in propagator.batches] == [["m1", "m2"]]
    finally:
        cache.close()


def test_mark_read_updates_snapshot_provider_and_store(tmp_path):
    gateway = FakeGateway()
    cache = _cache(tmp_path, gateway=gateway)
    try:
        assert cache.mark_read("m1") is True
        assert cache._copy().emails[0].is_read is True
        assert gateway.calls == [("mark_read", "m1", True)]
        assert cache.store.get_message("m1").is_read is True
    finally:
        cache.close()


def test_mark_read_reverts_when_provider_fails(tmp_path):
    gateway = FakeGateway()
    gateway.fail = True
    cache = _cache(tmp_path, gateway=gateway)
    try:
        with pytest.raises(ExternalServiceError):
            cache.mark_read("m1")
        assert cache._copy().emails[0].is_read is False
        assert cache.store.get_message("m1").is_read is False
    finally:
        cache.close()


def test_toggle_star_flips_and_reverts(tmp_path):
    gateway = FakeGateway()
    cache = _cache(tmp_path, gateway=gateway)
    try:
        assert cache.toggle_star("m2") is True
        assert cache.store.get_message("m2").is_flagged is True

        gateway.fail = True
        with pytest.raises(ExternalServiceError):
            cache.toggle_star("m2")
        assert cache._copy().emails[1].is_flagged is True
    finally:
        cache.close()


def test_toggle_star_rejects_unknown_message(tmp_path):
    cache = _cache(tmp_path)
    try:
        with pytest.raises(ValidationError):
            cache.toggle_star("missing")
    finally:
        cache.close()


def test_delete_moves_to_trash_folder(tmp_path):
    gateway = FakeGateway()
    cache = _cache(tmp_path, gateway=gateway)
    try:
        cache.refresh()
        assert cache.delete_message("m1") == "moved"
        assert gateway.calls == [("move", "m1", "F-DEL")]
        assert cache._copy().emails[0].folder_key == "trash"
        assert cache.store.get_message("m1").folder_key == "trash"
    finally:
        cache.close()


def test_delete_follows_new_id_after_move(tmp_path):
    gateway = FakeGateway()
    gateway.moved_id = "m1-moved"
    cache = _cache(tmp_path, gateway=gateway)
    try:
        cache.refresh()
        cache.delete_message("m1")
        assert "m1-moved" in _ids(cache._copy())
        assert cache.store.get_message("m1") is None
        assert cache.store.get_message("m1-moved").folder_key == "trash"
    finally:
        cache.close()


def test_delete_move_failure_reverts(tmp_path):
    gateway = FakeGateway()
    cache = _cache(tmp_path, gateway=gateway)
    try:
        cache.refresh()
        gateway.fail = True
        with pytest.raises(ExternalServiceError):
            cache.delete_message("m1")
        assert cache._copy().emails[0].folder_key == "inbox"
        assert cache.store.get_message("m1").folder_key == "inbox"
    finally:
        cache.close()


def test_delete_without_trash_folder_hard_deletes(tmp_path):
    gateway = FakeGateway()
    orchestrator = FakeOrchestrator()
    orchestrator.trash_folder_id = None
    cache = _cache(tmp_path, gateway=gateway, orchestrator=orchestrator)
    try:
        cache.refresh()
        assert cache.delete_message("m1") == "deleted"
        assert gateway.calls == [("delete", "m1")]
        assert _ids(cache._copy()) == ["m2"]
        assert cache.store.get_message("m1") is None
    finally:
        cache.close()


def test_delete_from_trash_hard_deletes_and_reverts_on_failure(tmp_path):
    gateway = FakeGateway()
    orchestrator = FakeOrchestrator(
        SyncResult(kind=FULL, emails=[_msg("t1", folder_key="trash"), _msg("m2", received=OLDER)], folders=list(FOLDERS))
    )
    cache = _cache(tmp_path, gateway=gateway, orchestrator=orchestrator)
    try:
        cache.refresh()
        gateway.fail = True
        with pytest.raises(ExternalServiceError):
            cache.delete_message("t1")
        assert _ids(cache._copy()) == ["t1", "m2"]

        gateway.fail = False
        assert cache.delete_message("t1") == "deleted"
        assert _ids(cache._copy()) == ["m2"]
    finally:
        cache.close()


def test_search_uses_store_normally(tmp_path):
    cache = _cache(tmp_path)
    try:
        cache.store.upsert_messages([_msg("m9", subject="Quarterly invoice")])
        assert [m.id for m in cache.search_messages("invoice")] == ["m9"]
    finally:
        cache.close()


def test_degraded_store_serves_search_and_stats_from_memory(tmp_path):
    orchestrator = FakeOrchestrator(
        SyncResult(kind=FULL, emails=[_msg("m1", subject="Invoice"), _msg("m2", received=OLDER)], folders=list(FOLDERS))
    )
    cache = _cache(tmp_path, store=_degraded_store(tmp_path), orchestrator=orchestrator)
    try:
        assert cache._copy().emails == []
        cache.refresh()

        assert [m.id for m in cache.search_messages("invoice")] == ["m1"]
        assert cache.search_messages("") == []
        stats = cache.get_cache_stats()
        assert stats["total_messages"] == 2
        assert stats["total_folders"] == 2
        assert stats["cache_size"] == "4.0 KB"
        assert stats["degraded"] is True
        assert stats["last_sync"] == "1970-01-01T01:23:20Z"

        cache.mark_read("m2")
        assert cache._copy().emails[1].is_read is True
    finally:
        cache.close()


def _raw(msg_id, received):
    return {
        "id": msg_id,
        "subject": "Hello",
        "from": {"emailAddress": {"name": "Ann Smith", "address": "ann@acme.com"}},
        "receivedDateTime": received,
        "isRead": False,
    }


class SyncingGateway(FakeGateway):
    def __init__(self):
        super().__init__()
        self.fetches = []
        self.messages_by_folder = {
            "F-IN": [_raw("in-1", "2026-05-31T09:00:00Z"), _raw("in-2", "2026-05-30T09:00:00Z")],
            "F-DEL": [_raw("del-1", "2026-05-29T09:00:00Z")],
        }

    def fetch_all(self, resource_type, page_size=50, max_pages=10, max_records=None, **params):
        self.fetches.append(params.get("folder_id") or resource_type)
        if resource_type == "folders":
            return [{"id": "F-IN", "displayName": "Inbox"}, {"id": "F-DEL", "displayName": "Deleted Items"}]
        if resource_type == "messages":
            return list(self.messages_by_folder[params["folder_id"]])
        return []

    def fetch_delta(self, folder_id="inbox", delta_link=None):
        return [], f"delta-{folder_id}", []


def test_refresh_inside_min_interval_keeps_local_changes(tmp_path):
    clock = FakeClock()
    store = _store(tmp_path)
    gateway = SyncingGateway()
    orchestrator = SyncOrchestrator(
        gateway, store, clock=clock, now=lambda: datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
    )
    cache = MailboxCache(orchestrator, store, gateway, ttl=300, debounce_ms=0, clock=clock)
    try:
        cache.refresh()
        cache.mark_read("in-1")
        cache.toggle_star("in-2")
        assert cache.delete_message("del-1") == "deleted"
        clock.value += 5

        snapshot = cache.refresh()

        assert gateway.fetches.count("folders") == 1
        by_id = {m.id: m for m in snapshot.emails}
        assert by_id["in-1"].is_read is True
        assert by_id["in-2"].is_flagged is True
        assert "del-1" not in by_id
        assert snapshot.fetched_at == 5000.0
        assert snapshot.last_error is None
        assert store.get_message("in-1").is_read is True
        assert store.get_message("del-1") is None
    finally:
        cache.close()


def test_reused_result_marks_snapshot_fetched_without_propagating(tmp_path):
    orchestrator = FakeOrchestrator(
        SyncResult(kind=FULL, emails=[_msg("stale")], folders=list(FOLDERS), reused=True)
    )
    propagator = FakePropagator()
    cache = _cache(tmp_path, orchestrator=orchestrator, propagator=propagator)
    try:
        cache.mark_read("stale")
        snapshot = cache.refresh()

        assert snapshot.emails[0].is_read is True
        assert propagator.batches == []
        assert snapshot.fetched_at == 5000.0
        assert [f.key for f in snapshot.folders] == ["inbox", "trash"]
    finally:
        cache.close()
