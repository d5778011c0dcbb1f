"""sftpbridge: command-line entry point.

Configures logging, resolves an endpoint from a saved profile or the command
line, runs one operation and exits.  Transfers print their progress from the
event stream.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading

from sftpbridge import (
    Bridge,
    ConfigManager,
    FileEntry,
    KeyCredential,
    NotFoundError,
    PasswordCredential,
    RemoteEndpoint,
    SftpBridgeError,
    TransferItem,
    endpoint_from_profile,
)
from sftpbridge.events import ProgressEvent
from sftpbridge.utils.path_helpers import human_readable_size, resolve_remote_path

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s - %(message)s"
_DATE_FORMAT = "%H:%M:%S"
_PASSWORD_ENV = "SFTPBRIDGE_PASSWORD"

log = logging.getLogger("sftpbridge.main")


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sftpbridge", description="One-shot SFTP operations.")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    target = parser.add_argument_group("endpoint")
    target.add_argument("--profile", help="saved profile name")
    target.add_argument("--host")
    target.add_argument("--port", type=int, default=22)
    target.add_argument("--user", default=os.environ.get("USER", ""))
    target.add_argument("--key", help="private key file (password taken from $%s otherwise)" % _PASSWORD_ENV)

    sub = parser.add_subparsers(dest="command", required=True)
    ls = sub.add_parser("ls", help="list a remote directory")
    ls.add_argument("path", nargs="?", default=None)
    sub.add_parser("mkdir").add_argument("path")
    sub.add_parser("rm").add_argument("path")
    sub.add_parser("rmdir").add_argument("path")
    mv = sub.add_parser("mv")
    mv.add_argument("old")
    mv.add_argument("new")
    get = sub.add_parser("get", help="download a file")
    get.add_argument("remote")
    get.add_argument("local")
    put = sub.add_parser("put", help="upload a file")
    put.add_argument("local")
    put.add_argument("remote")
    sub.add_parser("profiles", help="list saved profiles")
    return parser


def _resolve_endpoint(args: argparse.Namespace, config: ConfigManager) -> RemoteEndpoint:
    passphrase = os.environ.get(_PASSWORD_ENV) if args.key else None
    if args.profile:
        profile = config.get_profile(args.profile)
        if profile is None:
            raise SystemExit(f"Unknown profile: {args.profile}")
        return endpoint_from_profile(profile, passphrase=passphrase)
    if not args.host:
        raise SystemExit("Either --profile or --host is required")

    if args.key:
        credential = KeyCredential(key_path=args.key, passphrase=passphrase)
    elif os.environ.get(_PASSWORD_ENV):
        credential = PasswordCredential(os.environ[_PASSWORD_ENV])
    else:
        credential = None
    return RemoteEndpoint(host=args.host, port=args.port, username=args.user, credential=credential)


def _resolve_remote_args(args: argparse.Namespace, start: str) -> None:
    """Make relative remote arguments absolute against *start*."""
    for name in ("path", "old", "new", "remote"):
        value = getattr(args, name, None)
        if value:
            setattr(args, name, resolve_remote_path(value, start))


def _print_listing(entries: list[FileEntry]) -> None:
    for entry in entries:
        size = "DIR" if entry.is_dir else human_readable_size(entry.size)
        print(f"{entry.permissions}  {size:>10}  {entry.name}")


def _progress_line(event: ProgressEvent, item: TransferItem | None) -> str:
    """One status line: percentage, bytes so far, and speed/ETA when known."""
    pct = 100.0 * event.transferred / event.total if event.total else 100.0
    line = f"{event.path}: {pct:5.1f}%  {human_readable_size(event.transferred)}"
    if item is not None and item.speed_mbps > 0:
        line += f"  {item.speed_mbps:.1f} MB/s"
        eta = item.eta_seconds
        if eta is not None:
            minutes, seconds = divmod(int(eta), 60)
            line += f"  ETA {minutes:d}:{seconds:02d}"
    return line


def _run_transfer(bridge: Bridge, session_id: str, args: argparse.Namespace) -> int:
    """Start the transfer, print progress, and return the exit status."""
    done = threading.Event()
    outcome: dict[str, object] = {}
    transfer_id: list[str] = []

    def on_event(event) -> None:
        if transfer_id and event.transfer_id != transfer_id[0]:
            return
        if isinstance(event, ProgressEvent):
            try:
                item = bridge.transfers.get(event.transfer_id)
            except NotFoundError:
                item = None
            print("\r" + _progress_line(event, item), end="", flush=True)
            return
        outcome.update(event.to_dict(), name=event.name)
        done.set()

    unsubscribe = bridge.events.subscribe(on_event)
    try:
        if args.command == "get":
            transfer_id.append(bridge.start_download(session_id, args.remote, args.local))
        else:
            transfer_id.append(bridge.start_upload(session_id, args.local, args.remote))
        try:
            while not done.wait(timeout=0.5):
                pass
        except KeyboardInterrupt:
            bridge.cancel_transfer(transfer_id[0])
            done.wait()
    finally:
        unsubscribe()
    print()

    if outcome.get("name") == "process_finished":
        return 0
    if outcome.get("name") == "transfer_error":
        print(f"error: {outcome.get('error')}", file=sys.stderr)
    else:
        print("cancelled", file=sys.stderr)
    return 1


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run one sftpbridge command."""
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    config = ConfigManager()

    if args.command == "profiles":
        for profile in config.get_profiles():
            print(f"{profile['name']}: {profile.get('username', '')}@{profile['host']}:{profile.get('port', 22)}")
        return 0

    try:
        endpoint = _resolve_endpoint(args, config)
    except ValueError as exc:
        log.error("Invalid endpoint: %s", exc)
        return 2

    start = config.get("remote_start_path", "/")
    _resolve_remote_args(args, start)
    with Bridge.from_config(config) as bridge:
        try:
            session_id = bridge.connect(endpoint)
            if args.command == "ls":
                _print_listing(bridge.list_directory(session_id, args.path or start))
            elif args.command == "mkdir":
                bridge.create_directory(session_id, args.path)
            elif args.command in ("rm", "rmdir"):
                bridge.delete(session_id, args.path, is_dir=args.command == "rmdir")
            elif args.command == "mv":
                bridge.rename(session_id, args.old, args.new)
            else:
                return _run_transfer(bridge, session_id, args)
        except SftpBridgeError as exc:
            log.error("%s failed: %s", args.command, exc)
            return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
