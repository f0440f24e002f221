"""
pg-pitr archiver service - Main entry point.

This module runs the continuous archiving side of pg-pitr:
- Segment reader loop (WAL directory -> archive)
- Retention loop (archive pruning), when enabled

Restores are operator actions and run through the CLI (tools/cli.py),
never inside the service.

Usage:
    python -m dbaas.pitr_server.main
    pitr archive run

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The archive is opened before any loop starts
    - Graceful shutdown lets an in-flight segment put finish
    - A loop that dies (e.g. ArchiveConflict) shuts the service down

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .archive import ArchiveStore, create_archive_backend
from .config import ServerConfig
from .retention import RetentionManager, RetentionPolicy
from .wal import SegmentCursor
from .wal.reader import SegmentReader

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


def create_store(config: ServerConfig) -> ArchiveStore:
    """Build an ArchiveStore from configuration (not yet opened)."""
    return ArchiveStore(
        create_archive_backend(config),
        compression=config.archive.compression,
        chunk_size=config.archive.chunk_size,
        backup_lease_seconds=config.archive.backup_lease_seconds,
        gc_lease_seconds=config.archive.gc_lease_seconds,
    )


class Server:
    """pg-pitr archiver orchestrator.

    Manages the lifecycle of:
    - The archive store
    - The segment reader loop
    - The retention loop

    Attributes:
        config: Server configuration
        store: Archive store
        reader: Segment reader
        retention: Retention manager (if enabled)

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None, store: ArchiveStore | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            store: Optional pre-built archive store (built from config if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: ArchiveStore | None = store
        self.reader: SegmentReader | None = None
        self.retention: RetentionManager | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting pg-pitr archiver")
        self.config.log_config()

        try:
            if self.store is None:
                self.store = create_store(self.config)
            await self.store.open()
            logger.info("Archive store opened")

            self.reader = SegmentReader(
                store=self.store,
                cursor=SegmentCursor(self.config.wal.cursor_path),
                wal_dir=self.config.wal.wal_dir,
                segment_size=self.config.wal.segment_size,
                timeline=self.config.wal.timeline,
                poll_interval_seconds=self.config.wal.poll_interval_seconds,
                require_ready_marker=self.config.wal.require_ready_marker,
            )
            self._spawn(self.reader.start(), "segment-reader")

            if self.config.retention.enabled:
                self.retention = RetentionManager(
                    store=self.store,
                    policy=RetentionPolicy.from_config(self.config.retention),
                    segment_size=self.config.wal.segment_size,
                    interval_seconds=self.config.retention.interval_seconds,
                )
                self._spawn(self.retention.start(), "retention")

            self._running = True
            logger.info("pg-pitr archiver started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._on_task_done)
        self._tasks.append(task)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{task.get_name()} stopped with error, shutting down: {error}")
            self.request_shutdown()

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping pg-pitr archiver")

        if self.reader:
            await self.reader.stop()

        if self.retention:
            await self.retention.stop()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.store:
            await self.store.close()

        self._running = False
        logger.info("pg-pitr archiver stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
