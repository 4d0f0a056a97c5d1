"""Entry point: logging setup and the operator CLI for the store."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from pageledger.auth.credentials import PasswordStore
from pageledger.catalog.service import ImageCatalog
from pageledger.config import Settings, get_log_path, get_settings
from pageledger.db.session import SchemaStore
from pageledger.errors import SchemaVersionMismatch
from pageledger.history.service import HistoryLedger
from pageledger.identity import content_key_for_path
from pageledger.sessions.service import SessionGroups
from pageledger.transfer.codec import HistoryCodec
from pageledger.transfer.models import ImportMode
from pageledger.ui.notify import notify_error

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_VERSION_MISMATCH = 2


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _console_level(name: str) -> int:
    level = logging.getLevelName((name or "").upper())
    return level if isinstance(level, int) else logging.INFO


def _formatted(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(settings: Settings) -> Path:
    """
    Attach a DEBUG file handler (get_log_path()) and a stderr handler at
    settings.log_level to the pageledger logger. Calling it again replaces both.
    """
    log_file = get_log_path()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger("pageledger")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(_formatted(logging.FileHandler(log_file, encoding="utf-8"), logging.DEBUG))
    logger.addHandler(_formatted(logging.StreamHandler(sys.stderr), _console_level(settings.log_level)))
    logger.debug("Logging to %s", log_file)
    return log_file


def build_store(settings: Settings) -> SchemaStore:
    """Store handle for settings' data directory."""
    chunk = settings.content_hash_chunk_bytes
    return SchemaStore(
        settings.data_dir,
        legacy_dir=settings.legacy_data_dir,
        content_key_resolver=lambda path: content_key_for_path(path, chunk_size=chunk),
    )


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pageledger", description="Inspect and maintain the PageLedger store.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("info", help="Show store location, schema version and entry counts")
    p_export = sub.add_parser("export", help="Export history as JSON")
    p_export.add_argument("output", nargs="?", default="-", help="Output file (default: stdout)")
    p_import = sub.add_parser("import", help="Import history from an export file")
    p_import.add_argument("input", help="Export file to import")
    p_import.add_argument("--replace", action="store_true", help="Delete existing history first")
    sub.add_parser("reset", help="Delete the store and start empty")
    sub.add_parser("repair-keys", help="Retry repairing corrupted content keys")
    p_clear = sub.add_parser("clear", help="Delete all history entries")
    p_clear.add_argument("--all", action="store_true", help="Also clear the image catalog and session groups")
    return parser


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    store = build_store(settings)
    try:
        await store.open()
    except SchemaVersionMismatch as e:
        if args.command != "reset":
            log.error("%s. Upgrade PageLedger or run 'pageledger reset'.", e)
            notify_error("PageLedger: store error", str(e))
            return EXIT_VERSION_MISMATCH
        log.warning("Resetting store written by a newer version (%s)", e)
    try:
        if args.command == "reset":
            ok = await store.reset()
            print("Store reset" if ok else "Store reset failed")
            return EXIT_OK if ok else EXIT_FAILED
        if not store.is_initialized:
            log.error("Store could not be opened: %s", store.initialization_error)
            notify_error("PageLedger: store error", str(store.initialization_error))
            return EXIT_FAILED

        ledger = HistoryLedger(
            store,
            max_history_count=settings.max_history_count,
            credentials=PasswordStore(settings.credential_service),
        )
        await ledger.load()

        if args.command == "info":
            catalog = ImageCatalog(store, max_catalog_count=settings.max_catalog_count)
            groups = SessionGroups(store, max_session_group_count=settings.max_session_group_count)
            await catalog.load()
            await groups.load()
            print(f"Store: {store.db_path}")
            print(f"Schema version: {store.read_stored_version()}")
            if store.failed_migrations:
                print(f"Failed migrations: {', '.join(str(v) for v in store.failed_migrations)}")
            print(f"History entries: {ledger.count} (limit {ledger.max_history_count})")
            print(f"Catalog entries: {len(catalog.catalog)} (limit {catalog.max_catalog_count})")
            print(f"Session groups: {len(groups.groups)} (limit {groups.max_session_group_count})")
            return EXIT_OK

        if args.command == "export":
            text = await HistoryCodec(ledger).export_json()
            if args.output == "-":
                print(text)
            else:
                Path(args.output).write_text(text, encoding="utf-8")
                log.info("Exported %d entries to %s", ledger.count, args.output)
            return EXIT_OK

        if args.command == "import":
            try:
                data = Path(args.input).read_text(encoding="utf-8")
            except OSError as e:
                log.error("Cannot read %s: %s", args.input, e)
                return EXIT_FAILED
            mode = ImportMode.REPLACE if args.replace else ImportMode.MERGE
            result = await HistoryCodec(ledger).import_history(data, mode)
            print(result.message)
            return EXIT_OK if result.success else EXIT_FAILED

        if args.command == "repair-keys":
            report = await ledger.repair_corrupted_keys()
            if report is None:
                return EXIT_FAILED
            print(f"Repaired: {report.repaired}, merged: {report.merged}, skipped (file not accessible): {report.skipped}")
            return EXIT_OK

        if args.command == "clear":
            removed = await ledger.clear_all()
            print(f"Removed {removed} history entries")
            if args.all:
                catalog_removed = await ImageCatalog(store).clear_all()
                groups_removed = await SessionGroups(store).clear_all()
                print(f"Removed {catalog_removed} catalog entries and {groups_removed} session groups")
            return EXIT_OK
    finally:
        await store.close()
    return EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    """Run the operator CLI."""
    args = _parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings)
    log.debug("PageLedger %s (data dir %s)", args.command, settings.data_dir)
    return asyncio.run(_run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
