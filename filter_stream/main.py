#!/usr/bin/env python3
"""
Filter Stream Mock Service

Serves a mock of the legacy ``POST /1.1/statuses/filter.json`` streaming
endpoint until SIGINT or SIGTERM, then shuts down gracefully.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional, Sequence

from prometheus_client import start_http_server
import structlog

from shared.models import DEFAULT_ADDR, ServerConfig
from filter_stream.stream_server import BindError, ServerError, ShutdownTimeoutError, StreamServer

logger = structlog.get_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on top of the stdlib logger."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="filter-stream-mock",
        description="Mock server for the legacy statuses/filter streaming endpoint"
    )
    parser.add_argument("-addr", "--addr", default=DEFAULT_ADDR, help="HTTP server address (default %(default)s)")
    parser.add_argument(
        "-metrics-port", "--metrics-port",
        type=int,
        default=0,
        help="Port for Prometheus metrics, disabled when 0"
    )
    return parser.parse_args(argv)


async def supervise(
    config: ServerConfig,
    server: Optional[StreamServer] = None,
    signals: Sequence[signal.Signals] = SHUTDOWN_SIGNALS
) -> int:
    """Run the server until a shutdown signal arrives.

    Signal handlers are installed before the server starts so an early
    signal is not lost.

    Args:
        config: Server configuration
        server: Server to run, built from ``config`` when omitted
        signals: Signals that trigger a graceful shutdown

    Returns:
        Process exit status: 0 after a clean shutdown, 1 otherwise
    """
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for signum in signals:
        loop.add_signal_handler(signum, stop_requested.set)

    server = server or StreamServer(config)
    log = logger.bind(component="supervisor")

    try:
        log.info("Starting server", addr=config.addr)
        serve_task = asyncio.create_task(server.serve())
        stop_task = asyncio.create_task(stop_requested.wait())

        await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

        if serve_task.done():
            stop_task.cancel()
            error = serve_task.exception()
            if isinstance(error, BindError):
                log.error("Failed to start server", error=str(error))
            else:
                log.error("Server stopped unexpectedly", error=str(error))
            return 1

        log.info("Shutting down server...")
        try:
            await server.shutdown(config.shutdown_timeout)
        except ShutdownTimeoutError as e:
            log.error("Server shutdown failed", error=str(e))
            await asyncio.wait({serve_task}, timeout=1)
            serve_task.cancel()
            await asyncio.gather(serve_task, return_exceptions=True)
            return 1

        try:
            await serve_task
        except ServerError as e:
            log.error("Server stopped unexpectedly", error=str(e))
            return 1

        log.info("Server exited properly")
        return 0
    finally:
        for signum in signals:
            loop.remove_signal_handler(signum)


def run(argv: Optional[List[str]] = None) -> int:
    """Command line entry point returning the exit status."""
    args = parse_args(argv)
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    try:
        config = ServerConfig(addr=args.addr, metrics_port=args.metrics_port)
    except ValueError as e:
        logger.error("Invalid configuration", error=str(e))
        return 2

    if config.metrics_port:
        start_http_server(config.metrics_port)
        logger.info("Metrics exporter started", port=config.metrics_port)

    return asyncio.run(supervise(config))


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
