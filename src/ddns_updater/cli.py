"""
CLI entry point for DDNS Updater.

This module provides the command-line interface: update once and exit, or run
the periodic updater until SIGINT/SIGTERM is received.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import TYPE_CHECKING

from ddns_updater.config import load_config, parse_args
from ddns_updater.exceptions import ConfigurationError
from ddns_updater.logging_config import setup_logging, shutdown_logging
from ddns_updater.updater import Updater

if TYPE_CHECKING:
    from ddns_updater.models import PassReport


logger = logging.getLogger("ddns_updater.cli")


async def serve(updater: Updater, *, once: bool = False) -> PassReport | None:
    """
    Drive an updater until it is told to stop.

    Parameters
    ----------
    updater : Updater
        The updater to drive; it is closed before returning.
    once : bool, optional
        Run a single pass and return its report instead of scheduling.

    Returns
    -------
    PassReport | None
        The report of the single pass in `once` mode, otherwise None.
    """
    async with updater:
        if once:
            return await updater.update()

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops: Ctrl+C still raises KeyboardInterrupt
                logger.debug("Signal handler for %s not supported.", sig.name)
            else:
                installed.append(sig)

        updater.run()
        # Update immediately instead of waiting a full period for the first tick
        first_pass = loop.create_task(updater.update(), name="ddns-updater-first-pass")
        try:
            await stop_event.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
        logger.info("Received stop signal, shutting down.")
        # The first pass may not have reached the updater yet
        first_pass.cancel()
        await asyncio.gather(first_pass, return_exceptions=True)
        await updater.stop()
    return None


def main() -> None:
    """
    Start DDNS Updater.

    Parse command-line arguments, load configuration, and run the updater.
    """
    args = parse_args()
    try:
        config = load_config(args)
        setup_logging(config.log_level, config.log_file)
        updater = Updater.from_config(config)
    except ConfigurationError as e:
        print(e, file=sys.stderr)  # noqa: T201
        sys.exit(1)

    try:
        report = asyncio.run(serve(updater, once=args.once))
    except KeyboardInterrupt:
        report = None
    finally:
        shutdown_logging()

    if report is not None and not report.ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
