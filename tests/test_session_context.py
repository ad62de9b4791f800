import json

from crmsync.__main__ import build_parser, main
from crmsync.context import SessionContext
from crmsync.infra.cache_store import MailboxStore
from crmsync.infra.config_store import Config
from crmsync.services.mailbox_cache import MailboxCache


class FakeGateway:
    def __init__(self):
        self.closed = 0

    def close(self):
        self.closed += 1


def test_create_wires_one_owner_session(tmp_path):
    config = Config(path=str(tmp_path / "config.json"))
    config.data["contact_sync"]["batch_size"] = 7
    gateway = FakeGateway()

    ctx = SessionContext.create("Owner@Example.com", config=config, db_path=str(tmp_path / "cache.db"), gateway=gateway)
    try:
        assert ctx.owner == "owner@example.com"
        assert ctx.gateway is gateway
        assert ctx.orchestrator.store is ctx.store
        assert isinstance(ctx.cache, MailboxCache)
        assert ctx.cache.store is ctx.store
        assert ctx.cache.propagator is ctx.propagator
        assert ctx.propagator.settings.batch_size == 7
        assert ctx.store.degraded is False
    finally:
        ctx.close()


def test_close_is_idempotent(tmp_path):
    gateway = FakeGateway()
    ctx = SessionContext.create("owner@example.com", config=Config(path=str(tmp_path / "c.json")), db_path=str(tmp_path / "cache.db"), gateway=gateway)

    ctx.close()
    ctx.close()

    assert ctx.closed is True
    assert gateway.closed == 1


def test_context_manager_closes_session(tmp_path):
    gateway = FakeGateway()
    config = Config(path=str(tmp_path / "c.json"))

    with SessionContext.create("owner@example.com", config=config, db_path=str(tmp_path / "cache.db"), gateway=gateway) as ctx:
        assert ctx.closed is False

    assert ctx.closed is True
    assert gateway.closed == 1


def test_parser_requires_owner_for_sync():
    args = build_parser().parse_args(["sync", "--owner", "a@b.com", "--incremental"])

    assert args.command == "sync"
    assert args.incremental is True


def test_stats_command_prints_store_stats(tmp_path, capsys):
    db_path = str(tmp_path / "cache.db")
    MailboxStore("owner@example.com", db_path=db_path).close()

    code = main(["stats", "--owner", "owner@example.com", "--db", db_path])

    assert code == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["total_messages"] == 0
    assert stats["degraded"] is False


def test_stats_command_reports_unavailable_store(tmp_path, capsys):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")

    code = main(["stats", "--owner", "owner@example.com", "--db", str(blocker / "cache.db")])

    assert code == 1
    assert "Cache store unavailable" in capsys.readouterr().err
