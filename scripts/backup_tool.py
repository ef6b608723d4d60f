"""Operator tool for encrypted database backups.

    python scripts/backup_tool.py snapshot [--out DIR]
    python scripts/backup_tool.py restore FILE
    python scripts/backup_tool.py inspect FILE

Run it while the server is stopped; it opens the database configured through
the CHITCHAT_* environment variables.
"""

import argparse
import getpass
import logging
import sys
from pathlib import Path

# Allow running as `python scripts/backup_tool.py` from repo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from chitchat.db import store  # noqa: E402
from chitchat.errors import ChitChatDataError  # noqa: E402
from chitchat.services import backup, backup_codec  # noqa: E402


def _passphrase(confirm: bool) -> str:
    value = getpass.getpass("Backup passphrase: ")
    if confirm and getpass.getpass("Repeat passphrase: ") != value:
        raise SystemExit("Passphrases do not match")
    return value


def _snapshot(args) -> None:
    result = backup.snapshot(_passphrase(confirm=True))
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    target = out_dir / result.suggested_file_name
    target.write_bytes(result.payload)
    print(f"wrote {target}")


def _restore(args) -> None:
    payload = Path(args.file).read_bytes()
    result = backup.restore(payload, _passphrase(confirm=False))
    print(f"restored {store.path}")
    if result.rollback_file_path:
        print(f"previous database kept at {result.rollback_file_path}")
    for note in result.cleanup:
        print(f"warning: could not remove {note.path}: {note.error}")


def _inspect(args) -> None:
    header = backup_codec.read_envelope_header(Path(args.file).read_bytes())
    print(f"version={header.version} algorithm={header.algorithm} created_at={header.created_at}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    sub = parser.add_subparsers(dest="command", required=True)

    p_snapshot = sub.add_parser("snapshot", help="write an encrypted backup of the database")
    p_snapshot.add_argument("--out", default=".", help="directory for the .ccbk file")
    p_snapshot.set_defaults(func=_snapshot)

    p_restore = sub.add_parser("restore", help="replace the database with a backup")
    p_restore.add_argument("file")
    p_restore.set_defaults(func=_restore)

    p_inspect = sub.add_parser("inspect", help="show a backup's header without decrypting it")
    p_inspect.add_argument("file")
    p_inspect.set_defaults(func=_inspect)

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        args.func(args)
    except ChitChatDataError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        store.release()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
