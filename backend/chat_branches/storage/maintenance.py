from __future__ import annotations

import argparse
import json
import logging
import shutil
from pathlib import Path

from chat_branches.config import LOG_LEVEL, resolve_db_path
from chat_branches.storage.branches import BranchStore


_SIDECAR_SUFFIXES = (".wal", ".shadow")


def _sidecars(path: Path) -> list[tuple[str, Path]]:
    return [(suffix, path.with_name(path.name + suffix)) for suffix in _SIDECAR_SUFFIXES]


def _remove_path(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()


def _copy_path(src: Path, dst: Path) -> None:
    if src.is_dir():
        shutil.copytree(src, dst)
    else:
        shutil.copy2(src, dst)


def _copy_db(src: Path, dst: Path) -> None:
    if not src.exists():
        raise FileNotFoundError(f"db path not found: {src}")
    if dst.exists():
        raise FileExistsError(f"backup path already exists: {dst}")
    dst.parent.mkdir(parents=True, exist_ok=True)
    _copy_path(src, dst)
    for suffix, sidecar in _sidecars(src):
        if sidecar.exists():
            _copy_path(sidecar, dst.with_name(dst.name + suffix))


def _restore_db(src: Path, dst: Path) -> None:
    if not src.exists():
        raise FileNotFoundError(f"backup path not found: {src}")
    _remove_path(dst)
    for _, sidecar in _sidecars(dst):
        _remove_path(sidecar)
    dst.parent.mkdir(parents=True, exist_ok=True)
    _copy_path(src, dst)
    for suffix, sidecar in _sidecars(src):
        if sidecar.exists():
            _copy_path(sidecar, dst.with_name(dst.name + suffix))


def _with_store(db_path: Path, action):
    store = BranchStore.open(db_path)
    try:
        return action(store)
    finally:
        store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Repair, inspect, back up or restore the branch store."
    )
    parser.add_argument(
        "--db-path",
        required=False,
        help="Path to the Kuzu DB (defaults to CHAT_BRANCHES_DB_PATH).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("clean-duplicates", help="Deduplicate every index bucket.")
    subparsers.add_parser("stats", help="Print branch/owner/root counts.")

    orphans = subparsers.add_parser("orphans", help="List orphaned branches of an owner.")
    orphans.add_argument("--owner-id", required=True, help="Owner (character) id.")

    reset = subparsers.add_parser("reset", help="Delete every branch and index.")
    reset.add_argument("--yes", action="store_true", help="Confirm the reset.")

    backup = subparsers.add_parser("backup", help="Copy the DB to a backup path.")
    backup.add_argument("--backup-path", required=True, help="Backup destination.")

    restore = subparsers.add_parser("restore", help="Restore the DB from a backup.")
    restore.add_argument("--backup-path", required=True, help="Path to the backup.")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")
    db_path = Path(args.db_path) if args.db_path else resolve_db_path()

    if args.command == "clean-duplicates":
        removed = _with_store(db_path, lambda store: store.clean_duplicates())
        print(f"Cleaned {removed} duplicate entries from storage")
        return

    if args.command == "stats":
        stats = _with_store(db_path, lambda store: store.stats())
        print(json.dumps(stats.model_dump(), ensure_ascii=False))
        return

    if args.command == "orphans":
        orphans = _with_store(db_path, lambda store: store.find_orphans(args.owner_id))
        for branch in orphans:
            print(branch.model_dump_json())
        return

    if args.command == "reset":
        if not args.yes:
            parser.error("reset requires --yes")
        _with_store(db_path, lambda store: store.reset())
        print("Database reset")
        return

    if args.command == "backup":
        _copy_db(db_path, Path(args.backup_path))
        return

    if args.command == "restore":
        _restore_db(Path(args.backup_path), db_path)
        return

    raise RuntimeError(f"Unsupported command: {args.command}")


if __name__ == "__main__":
    main()
