from __future__ import annotations

import os
import sys
import logging
import argparse
import getpass as _getpass
import concurrent.futures as _fut

from typing import Dict, List, Optional

from keepsake.errors import (
    AuthenticationError,
    BadMacError,
    CancellationError,
    DowngradeError,
    KeepsakeError,
)
from keepsake.events import BackupEvent, CancellationSignal, EventBus, EventType
from keepsake.exporter import export
from keepsake.frames import STREAMED_FRAMES, DatabaseVersion, End
from keepsake.framing import BackupFrameReader
from keepsake.importer import import_file
from keepsake.profile import Profile
from keepsake.sqlutil import get_version, set_version


def _read_passphrase(password: Optional[str], *, confirm: bool = False) -> str:
    """Return ``password`` or prompt for one on the terminal.

    Args:
        password: Passphrase given on the command line, if any.
        confirm: Ask twice and require both entries to match (new backups).
    """
    if password is not None:
        return password
    pw = _getpass.getpass("Backup passphrase: ")
    if confirm and _getpass.getpass("Repeat passphrase: ") != pw:
        raise ValueError("Passphrases do not match")
    if not pw.replace(" ", ""):
        raise ValueError("Passphrase must not be empty")
    return pw


def _progress_printer(label: str):
    def _on_event(event: BackupEvent) -> None:
        if event.type == EventType.FINISHED:
            print(f"\r {label}: {event.count} records done.", file=sys.stderr, flush=True)
        elif event.estimated_total > 0:
            pct = min(100.0, 100.0 * event.count / event.estimated_total)
            print(f"\r {label}: {event.count}/{event.estimated_total} ({pct:5.1f}%)", end="", file=sys.stderr, flush=True)
        else:
            print(f"\r {label}: {event.count} frames", end="", file=sys.stderr, flush=True)

    return _on_event


def _run_export(profile_dir: str, output: str, passphrase: str, signal: CancellationSignal, events: EventBus) -> BackupEvent:
    # Connections are opened on the worker thread that uses them
    with Profile(profile_dir) as profile:
        return export(profile.context(events=events), output, passphrase, signal)


def cmd_export(profile_dir: str, output: str, *, password: Optional[str] = None, quiet: bool = False) -> bool:
    """Write an encrypted backup of a profile.

    Args:
        profile_dir: Profile directory to back up.
        output: Destination backup file; removed again if the export fails.
        password: Backup passphrase; prompted for when omitted.
        quiet: Suppress progress output.

    Returns:
        True on success, False when the export was canceled with Ctrl-C.
    """
    passphrase = _read_passphrase(password, confirm=True)
    signal = CancellationSignal()
    events = EventBus()
    if not quiet:
        events.subscribe(_progress_printer("Exporting"))

    with _fut.ThreadPoolExecutor(max_workers=1) as ex:
        future = ex.submit(_run_export, profile_dir, output, passphrase, signal, events)
        while True:
            try:
                done, _ = _fut.wait([future], timeout=0.25)
                if done:
                    break
            except KeyboardInterrupt:
                print("\n Canceling...", file=sys.stderr, flush=True)
                signal.cancel()
        try:
            event = future.result()
        except CancellationError:
            _discard(output)
            print("Backup canceled.", file=sys.stderr)
            return False
        except BaseException:
            _discard(output)
            raise

    if not quiet:
        print(f"\r Exporting: {event.count} records done.", file=sys.stderr, flush=True)
    print(f"Wrote {output}")
    return True


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def cmd_import(
    backup: str,
    profile_dir: str,
    *,
    password: Optional[str] = None,
    init_version: Optional[int] = None,
    quiet: bool = False,
) -> bool:
    """Restore a backup into a profile, replacing its tables.

    Args:
        backup: Backup file to read.
        profile_dir: Target profile directory.
        password: Backup passphrase; prompted for when omitted.
        init_version: Create the profile if needed and, when its database is
            new, stamp it with this schema version.
        quiet: Suppress progress output.
    """
    passphrase = _read_passphrase(password)
    with Profile(profile_dir, create=init_version is not None) as profile:
        if init_version is not None and get_version(profile.database) == 0:
            set_version(profile.database, init_version)
        events = EventBus()
        if not quiet:
            events.subscribe(_progress_printer("Importing"))
        event = import_file(profile.context(events=events), backup, passphrase)
    print(f"Imported {event.count} frames into {profile_dir}")
    return True


def cmd_inspect(backup: str, *, password: Optional[str] = None) -> bool:
    """Authenticate every frame and payload of a backup without restoring it.

    Returns:
        True when every streamed payload verified, False otherwise.
    """
    passphrase = _read_passphrase(password)
    counts: Dict[str, int] = {}
    version = None
    payload_bytes = 0
    bad_payloads = 0
    with open(backup, "rb") as fh:
        reader = BackupFrameReader(fh, passphrase)
        while True:
            frame = reader.read_frame()
            name = type(frame).__name__ if frame is not None else "Unknown"
            counts[name] = counts.get(name, 0) + 1
            if isinstance(frame, End):
                break
            if isinstance(frame, DatabaseVersion):
                version = frame.version
            if isinstance(frame, STREAMED_FRAMES):
                try:
                    reader.skip_stream(frame.length)
                    payload_bytes += frame.length
                except BadMacError:
                    bad_payloads += 1

    print(f"Backup: {backup}")
    print(f"  Database version: {version if version is not None else 'N/A'}")
    for name in sorted(counts):
        print(f"  {name}: {counts[name]}")
    print(f"  Payload bytes: {payload_bytes}")
    if bad_payloads:
        print(f"  Payloads failing authentication: {bad_payloads}")
    return bad_payloads == 0


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="keepsake",
        description="Keepsake encrypted profile backups",
        epilog="Every frame and every attachment payload is encrypted and individually authenticated.",
    )
    ap.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_export = sub.add_parser("export", help="Write a backup of a profile")
    ap_export.add_argument("profile", help="Profile directory")
    ap_export.add_argument("output", help="Output backup path")
    ap_export.add_argument("--password", help="Backup passphrase")
    ap_export.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_import = sub.add_parser("import", help="Restore a backup into a profile (replaces its tables)")
    ap_import.add_argument("backup", help="Backup path")
    ap_import.add_argument("profile", help="Profile directory")
    ap_import.add_argument("--password", help="Backup passphrase")
    ap_import.add_argument(
        "--init-version",
        type=int,
        help="Create the profile if missing and give a new database this schema version",
    )
    ap_import.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_inspect = sub.add_parser("inspect", help="Verify a backup and summarize its frames")
    ap_inspect.add_argument("backup", help="Backup path")
    ap_inspect.add_argument("--password", help="Backup passphrase")

    args = ap.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.cmd == "export":
            ok = cmd_export(args.profile, args.output, password=args.password, quiet=args.quiet)
        elif args.cmd == "import":
            ok = cmd_import(
                args.backup, args.profile, password=args.password, init_version=args.init_version, quiet=args.quiet
            )
        elif args.cmd == "inspect":
            ok = cmd_inspect(args.backup, password=args.password)
        else:
            raise RuntimeError("Unknown command")
        sys.exit(0 if ok else 1)
    except DowngradeError as e:
        print(f"Error: {e}. Update the application before restoring this backup.", file=sys.stderr)
        sys.exit(2)
    except AuthenticationError as e:
        print(f"Error: backup failed authentication (wrong passphrase or corrupted file): {e}", file=sys.stderr)
        sys.exit(2)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (KeepsakeError, OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
