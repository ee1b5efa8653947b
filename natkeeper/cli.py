"""Command-line entry point of the NAT keeper."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import Optional, Sequence, Union

from .conf import Config, ConfigError, Mode, help_text, parse_args
from .misc import run_daemon
from .tnsk import TcpKeeper
from .unsk import UdpKeeper

_FILE_LIMIT = 65536


def create_keeper(config: Config) -> Union[TcpKeeper, UdpKeeper]:
    """Return the session keeper for the configured transport."""
    if config.mode is Mode.TCP:
        return TcpKeeper(config)
    return UdpKeeper(config)


def _raise_file_limit() -> None:
    try:
        import resource
    except ImportError:
        return
    with contextlib.suppress(ValueError, OSError):
        resource.setrlimit(resource.RLIMIT_NOFILE, (_FILE_LIMIT, _FILE_LIMIT))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse arguments and keep the NAT mapping alive until interrupted."""
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        config = parse_args(args)
    except ConfigError:
        sys.stderr.write(help_text())
        return 1

    logging.basicConfig(level=logging.WARNING, format="[%(levelname).1s] %(name)s: %(message)s")

    if config.daemon:
        run_daemon()

    _raise_file_limit()
    keeper = create_keeper(config)
    try:
        asyncio.run(keeper.run())
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())