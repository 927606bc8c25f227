"""
Index Notifier Service.

Wires the pipeline together:
- a worker thread running the IndexSynchronizer (blocking git I/O)
- the Dispatcher on the asyncio loop (Telegram and database I/O)
- an AckChannel between the two
- a small FastAPI app exposing /health and /metrics
"""

import asyncio
import logging
import signal
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from git import InvalidGitRepositoryError, NoSuchPathError, Repo

from config.settings import Settings, settings
from shared.database import DatabaseManager, SubscriberLookup, SubscriberRepository
from shared.events import AckChannel
from shared.transport import TelegramTransport
from services.index_notifier import __version__
from services.index_notifier.dispatcher import Dispatcher
from services.index_notifier.extractor import DiffExtractor
from services.index_notifier.sender import RateLimitedSender
from services.index_notifier.synchronizer import IndexSynchronizer

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.monitoring.log_level),
    format=settings.monitoring.log_format,
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Index Notifier Service",
    description="Package index change detection and notification service",
    version=__version__,
)


def open_repository(path: str, url: str) -> Repo:
    """Open the local index checkout, cloning it first if it does not exist."""
    try:
        return Repo(path)
    except (InvalidGitRepositoryError, NoSuchPathError):
        logger.info(f"Start cloning {url} into {path}")
        repo = Repo.clone_from(url, path)
        logger.info("Cloning finished")
        return repo


class IndexNotifierService:
    """Owns the pipeline components and the shared cancellation signal."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings
        self.cancel = threading.Event()
        self.db_manager = DatabaseManager(self.config)
        self.repo: Optional[Repo] = None
        self.transport: Optional[TelegramTransport] = None
        self.channel: Optional[AckChannel] = None
        self.dispatcher: Optional[Dispatcher] = None
        self.synchronizer: Optional[IndexSynchronizer] = None
        self.worker: Optional[threading.Thread] = None
        self.started_at: Optional[datetime] = None

    async def initialize(
        self,
        repo: Optional[Repo] = None,
        transport: Optional[TelegramTransport] = None,
        subscribers: Optional[SubscriberLookup] = None,
    ):
        """Build the pipeline; must be called from the event loop that will run it."""
        index = self.config.index
        notify = self.config.notify

        self.repo = repo or await asyncio.to_thread(open_repository, index.path, index.url)
        self.transport = transport or TelegramTransport(self.config)
        if subscribers is None:
            subscribers = SubscriberRepository(self.db_manager)

        self.channel = AckChannel(asyncio.get_running_loop(), capacity=notify.channel_capacity)
        self.dispatcher = Dispatcher(
            RateLimitedSender(
                self.transport, attempts=notify.retry_attempts, retry_delay=notify.retry_delay
            ),
            subscribers,
            broadcast_chat=notify.channel,
            banned_packages=notify.banned_packages,
            broadcast_delay=notify.broadcast_delay,
        )
        self.synchronizer = IndexSynchronizer(
            self.repo,
            self.channel,
            DiffExtractor(bot_author=index.bot_author),
            self.cancel,
            remote=index.remote,
            branch=index.branch,
            pull_delay=index.pull_delay,
            pull_step=index.pull_step,
            ack_poll_interval=index.ack_poll_interval,
            shutdown_grace=self.config.service.graceful_shutdown_timeout,
        )
        logger.info("Index notifier service initialized successfully")

    def stop(self):
        """Request a cooperative shutdown."""
        if not self.cancel.is_set():
            logger.info("Stopping index notifier service")
            self.cancel.set()

    @property
    def running(self) -> bool:
        return self.worker is not None and self.worker.is_alive()

    async def run(self):
        """Run until stopped: the worker thread plus the dispatch loop."""
        if self.synchronizer is None:
            await self.initialize()

        self.started_at = datetime.now(timezone.utc)
        self.worker = threading.Thread(
            target=self.synchronizer.run, name="index-synchronizer", daemon=True
        )
        self.worker.start()
        logger.info("starting")

        try:
            # Returns once the worker closed the channel and every event is drained
            await self.dispatcher.run(self.channel)
        finally:
            self.stop()
            await asyncio.to_thread(
                self.worker.join, self.config.service.graceful_shutdown_timeout
            )

    async def close(self):
        """Close service connections."""
        if self.transport:
            await self.transport.close()
        await self.db_manager.close()
        logger.info("Index notifier service connections closed")

    def status(self) -> Dict[str, Any]:
        """Snapshot for the health endpoint and the CLI."""
        return {
            "running": self.running,
            "stopping": self.cancel.is_set(),
            "cursor": self.synchronizer.cursor if self.synchronizer else None,
            "queue_depth": self.channel.qsize() if self.channel else 0,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }

    def metrics(self) -> Dict[str, Any]:
        return {
            "sync": self.synchronizer.stats.to_dict() if self.synchronizer else {},
            "dispatch": self.dispatcher.stats.to_dict() if self.dispatcher else {},
        }


# Service instance
notifier_service = IndexNotifierService()


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    status = notifier_service.status()
    if not status["running"]:
        return JSONResponse(status_code=503, content={"status": "unhealthy", **status})
    return {"status": "healthy", **status}


@app.get("/metrics")
async def get_metrics():
    """Pipeline counters."""
    return notifier_service.metrics()


async def serve_api(service: IndexNotifierService, server: uvicorn.Server):
    """Serve the health app; uvicorn exiting on a signal also stops the service."""
    await server.serve()
    service.stop()


async def main(service: Optional[IndexNotifierService] = None):
    """Run the service until SIGINT/SIGTERM."""
    service = service or notifier_service
    config = service.config

    await service.initialize()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.stop)
        except NotImplementedError:
            # Windows event loops lack signal handlers
            pass

    try:
        if config.service.api_enabled:
            server = uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=config.service.api_host,
                    port=config.service.api_port,
                    log_level=config.monitoring.log_level.lower(),
                )
            )

            async def run_pipeline():
                try:
                    await service.run()
                finally:
                    server.should_exit = True

            await asyncio.gather(run_pipeline(), serve_api(service, server))
        else:
            await service.run()
    finally:
        await service.close()


if __name__ == "__main__":
    asyncio.run(main())
