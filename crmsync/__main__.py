import argparse
import json
import logging
import sys

from crmsync.constants import APP_NAME
from crmsync.context import SessionContext
from crmsync.errors import ProjectError, StoreUnavailable
from crmsync.infra.cache_store import MailboxStore
from crmsync.infra.config_store import Config


def _print_device_code(flow):
    print(flow.get("message") or f"Open {flow['verification_uri']} and enter {flow['user_code']}")
    sys.stdout.flush()


def build_parser():
    parser = argparse.ArgumentParser(prog=APP_NAME, description="Sync a mailbox and its contacts into a local cache.")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="run one sync and print cache statistics")
    sync.add_argument("--owner", required=True, help="mailbox owner email")
    sync.add_argument("--db", help="cache database path")
    sync.add_argument("--incremental", action="store_true", help="apply changes since the last sync only")

    stats = commands.add_parser("stats", help="print cache statistics")
    stats.add_argument("--owner", required=True, help="mailbox owner email")
    stats.add_argument("--db", help="cache database path")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = Config()

    if args.command == "stats":
        store = MailboxStore(args.owner, db_path=args.db)
        try:
            print(json.dumps(store.ensure_available().get_cache_stats(), indent=2))
        except StoreUnavailable as exc:
            print(exc, file=sys.stderr)
            return 1
        finally:
            store.close()
        return 0

    with SessionContext.create(args.owner, config=config, db_path=args.db) as ctx:
        ctx.gateway.on_device_code = _print_device_code
        try:
            if not ctx.gateway.authenticate():
                print("Sign-in failed.", file=sys.stderr)
                return 2
            if args.incremental:
                result = ctx.orchestrator.incremental_sync(force=True)
            else:
                result = ctx.orchestrator.full_sync(force=True)
        except ProjectError as exc:
            print(f"Sync failed: {exc}", file=sys.stderr)
            return 1
        for error in result.errors:
            print(f"warning: {error}", file=sys.stderr)
        print(json.dumps(ctx.store.get_cache_stats(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
