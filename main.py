"""scpclient — command-line entry point.

Configures logging, parses ``SRC DST`` (one side ``[user@]host:path``),
and runs a single upload or download.

Usage::

    python main.py [-p] [-P PORT] [-i KEY] local.txt deploy@example.com:/srv/local.txt
    python main.py -p deploy@example.com:/srv/report.csv ./report.csv
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path

import paramiko

from scpclient import CancelToken, Configurer, ScpError
from scpclient.config import ConfigManager
from scpclient.connection import UnknownHostError
from scpclient.utils.path_helpers import RemoteSpec, human_readable_size, parse_remote_spec

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

_PROGRESS_STEP = 0.1

log = logging.getLogger("scpclient.main")


def _configure_logging(verbosity: int) -> None:
    """Set up root logging to stderr."""
    level = {0: logging.INFO, 1: logging.DEBUG}.get(verbosity, logging.WARNING)
    logging.basicConfig(
        level=level,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


class _ProgressLogger:
    """Logs a line every time another tenth of the file has moved."""

    def __init__(self, label: str) -> None:
        self._label = label
        self._next = _PROGRESS_STEP

    def __call__(self, fraction: float) -> None:
        if fraction + 1e-9 < self._next:
            return
        log.info("%s: %3d%%", self._label, int(fraction * 100))
        while self._next <= fraction + 1e-9:
            self._next += _PROGRESS_STEP


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scpclient",
        description="Copy one file to or from a remote host over SCP.",
    )
    parser.add_argument("source", help="local path or [user@]host:path")
    parser.add_argument("destination", help="local path or [user@]host:path")
    parser.add_argument("-P", "--port", type=int, help="SSH port")
    parser.add_argument("-i", "--identity", help="private key file")
    parser.add_argument("-p", "--preserve", action="store_true",
                        help="keep modification/access times and mode when downloading")
    parser.add_argument("-t", "--timeout", type=float, help="overall transfer timeout in seconds")
    parser.add_argument("--remote-binary", help="path of scp on the remote host")
    parser.add_argument("--profile", help="stored host profile to use")
    parser.add_argument("--mode", default=None, help="octal mode for uploads (default: local file mode)")
    parser.add_argument("-q", "--quiet", action="store_true", help="only log warnings and errors")
    parser.add_argument("-v", "--verbose", action="store_true", help="log protocol steps")
    return parser


def _resolve(args: argparse.Namespace) -> tuple[RemoteSpec, str, bool]:
    """Return (remote side, local path, is_upload) or raise SystemExit."""
    source = parse_remote_spec(args.source)
    destination = parse_remote_spec(args.destination)
    if (source is None) == (destination is None):
        raise SystemExit("exactly one of SOURCE and DESTINATION must be [user@]host:path")
    if destination is not None:
        return destination, args.source, True
    return source, args.destination, False


def run(argv: list[str] | None = None) -> int:
    """Parse *argv*, perform the transfer, and return the exit code."""
    args = _build_parser().parse_args(argv)
    _configure_logging(2 if args.quiet else 1 if args.verbose else 0)

    remote, local_path, is_upload = _resolve(args)

    try:
        builder = Configurer.from_config(ConfigManager(), args.profile, host=remote.host)
    except KeyError as exc:
        log.error("%s", exc.args[0])
        return 1
    if remote.username:
        builder.username(remote.username)
    if args.port:
        builder.port(args.port)
    if args.identity:
        builder.option("auth_type", "key").option("key_path", args.identity)
    if args.timeout is not None:
        builder.timeout(args.timeout)
    if args.remote_binary:
        builder.remote_binary(args.remote_binary)
    client = builder.create()

    token = CancelToken()
    signal.signal(signal.SIGINT, lambda *_: token.cancel("interrupted"))

    try:
        with client:
            if is_upload:
                remote_path = remote.path
                if remote_path.endswith("/") or remote_path == ".":
                    remote_path = f"{remote_path.rstrip('/')}/{Path(local_path).name}"
                with open(local_path, "rb") as local_fh:
                    client.copy_from_file(
                        local_fh,
                        remote_path,
                        permissions=args.mode,
                        cancel=token,
                        on_progress=_ProgressLogger(Path(local_path).name),
                    )
                log.info("Uploaded %s (%s)", local_path, human_readable_size(Path(local_path).stat().st_size))
            else:
                infos = client.copy_from_remote_to_path(
                    local_path,
                    remote.path,
                    preserve=args.preserve,
                    cancel=token,
                    on_progress=_ProgressLogger(remote.path),
                )
                log.info("Downloaded %s (%s)", infos.filename, human_readable_size(infos.size))
    except UnknownHostError as exc:
        log.error("%s", exc)
        return 1
    except (ScpError, paramiko.SSHException, OSError, ValueError) as exc:
        log.error("Transfer failed: %s", exc)
        return 1
    return 0


def main() -> None:
    """Bootstrap and run scpclient."""
    sys.exit(run())


if __name__ == "__main__":
    main()
