#!/usr/bin/env python3
"""
Queue Worker — run the consumer without the HTTP API.

Usage:
    python scripts/run_worker.py
    python scripts/run_worker.py --config config/settings.yaml

Exit codes:
    0  graceful shutdown (SIGINT / SIGTERM)
    1  the queue store could not be reached at startup
"""
import argparse
import asyncio
import os
import signal
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_STARTUP_FAILED = 1


async def run_worker(config_path: str = None) -> int:
    from config.settings import load_settings
    from job_queue.errors import StartupError
    from job_queue.runtime import open_runtime
    from utils.log_config import configure_logging

    settings = load_settings(config_path)
    configure_logging(settings.log_format, settings.debug)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows: Ctrl+C raises KeyboardInterrupt instead

    try:
        async with open_runtime(settings) as runtime:
            await runtime.consumer.start_background()
            logger.info("worker_running", queue=runtime.store.main_queue)
            await stop.wait()
            logger.info("worker_shutdown_requested")
    except StartupError as e:
        logger.error("worker_startup_failed", error=str(e))
        return EXIT_STARTUP_FAILED

    logger.info("worker_exited")
    return EXIT_OK


def main():
    parser = argparse.ArgumentParser(description="Run the RecordRelay queue consumer")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    args = parser.parse_args()

    try:
        code = asyncio.run(run_worker(args.config))
    except KeyboardInterrupt:
        code = EXIT_OK
    sys.exit(code)


if __name__ == "__main__":
    main()
