"""
ClawWatch Collector — Process Entrypoint

Boot sequence:
  Phase 1: Database connection
  Phase 2: Schema (+ optional default rules / budget)
  Phase 3: Ingest pipeline (dedup guard rebuilt from recent cost records)
  Phase 4: Scheduler (alerts, transcript scan, retention)
  Phase 5: Metrics + health endpoints
  Phase 6: Gateway connection

Configuration errors exit with status 1 before anything connects.

Usage:
  python -m clawwatch_engine.entrypoint
  # or via pyproject.toml script:
  clawwatch-collector
"""
import asyncio
import logging
import signal
import sys
import time
from datetime import timedelta
from typing import Any

from aiohttp import web
from sqlalchemy.exc import SQLAlchemyError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from clawwatch_engine import __version__
from clawwatch_engine.alerts import AlertEvaluator
from clawwatch_engine.config import CollectorConfig
from clawwatch_engine.config_loader import load_collector_config
from clawwatch_engine.connection import ConnectionManager
from clawwatch_engine.db import (
    TelemetryStore,
    check_connection,
    create_engine,
    create_session_factory,
    ensure_schema,
)
from clawwatch_engine.db.models import utcnow
from clawwatch_engine.dedup import DedupGuard
from clawwatch_engine.exceptions import ConfigError
from clawwatch_engine.gateway import GatewayClient
from clawwatch_engine.ingest import Ingestor
from clawwatch_engine.logging_config import configure_logging
from clawwatch_engine.metrics import start_metrics_server
from clawwatch_engine.poller import SessionPoller
from clawwatch_engine.retention import RetentionSweeper
from clawwatch_engine.scanner import TranscriptScanner
from clawwatch_engine.scheduler import CollectorScheduler

logger = logging.getLogger("clawwatch_engine")

HEALTH_PATH = "/api/health"


class CollectorEngine:
    """Main collector process — manages DB, pipeline, scheduler, gateway, health."""

    def __init__(self, config: CollectorConfig):
        self.config = config
        self._shutdown_event = asyncio.Event()
        self._started_at = time.monotonic()
        self._db_engine = None
        self._session_factory = None
        self.store: TelemetryStore | None = None
        self.ingestor: Ingestor | None = None
        self.gateway: GatewayClient | None = None
        self.connection: ConnectionManager | None = None
        self.scheduler: CollectorScheduler | None = None
        self.scanner: TranscriptScanner | None = None
        self.evaluator: AlertEvaluator | None = None
        self.retention: RetentionSweeper | None = None
        self._initial_scan: asyncio.Task | None = None
        self._health_server: web.AppRunner | None = None

    async def start(self):
        """Boot, then run until a shutdown is requested."""
        logger.info("ClawWatch collector %s starting...", __version__)

        await self._init_database()
        logger.info("Phase 1: Database connected")

        await self._init_schema()
        logger.info("Phase 2: Schema ready")

        await self._init_pipeline()
        logger.info("Phase 3: Ingest pipeline ready (%d dedup keys restored)", len(self.ingestor.dedup))

        await self._init_scheduler()
        logger.info("Phase 4: Scheduler started")

        await self._init_endpoints()
        logger.info("Phase 5: Health server on :%d", self.config.health_port)

        await self.connection.start()
        logger.info("Phase 6: Gateway connection started (%s)", self.config.ws_url)

        from clawwatch_engine import set_engine
        set_engine(self)

        logger.info("ClawWatch collector running")

        await self._shutdown_event.wait()
        await self._cleanup()
        logger.info("ClawWatch collector stopped")

    # ── Phases ───────────────────────────────────────────────────────────────

    async def _init_database(self):
        self._db_engine = create_engine(
            self.config.database_url,
            pool_size=self.config.db_pool_size,
            max_overflow=self.config.db_max_overflow,
            echo=self.config.debug,
        )
        self._session_factory = create_session_factory(self._db_engine)

        @retry(
            retry=retry_if_exception_type((SQLAlchemyError, OSError)),
            stop=stop_after_attempt(5),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True,
        )
        async def _verify():
            await check_connection(self._db_engine)

        await _verify()
        self.store = TelemetryStore(self._session_factory)

    async def _init_schema(self):
        await ensure_schema(self._db_engine)
        if self.config.seed_defaults:
            await self.store.seed_defaults()

    async def _init_pipeline(self):
        now = utcnow()
        dedup = DedupGuard(now, backfill=timedelta(days=self.config.backfill_days))
        restored = await self.store.recent_dedup_keys(dedup.watermark)
        dedup.seed(restored, now)

        self.ingestor = Ingestor(self.store, dedup)
        self.scanner = TranscriptScanner(self.config.sessions_dir, self.ingestor)
        self.evaluator = AlertEvaluator(self.store)
        self.retention = RetentionSweeper(self.store)

        self.gateway = GatewayClient(
            self.config.rpc_url,
            self.config.gateway_token,
            timeout=self.config.gateway_rpc_timeout_seconds,
        )
        poller = SessionPoller(
            self.gateway,
            self.store,
            interval_seconds=self.config.session_poll_interval_seconds,
            gateway_url=self.config.gateway_url,
        )
        self.connection = ConnectionManager(self.config, self.ingestor, poller)

    async def _init_scheduler(self):
        self.scheduler = CollectorScheduler()
        self.scheduler.add_job(
            "alert_evaluation", self.evaluator.evaluate, f"{self.config.alert_eval_interval_seconds}s",
        )
        self.scheduler.add_job(
            "transcript_scan", self.scanner.scan, f"{self.config.scan_interval_seconds}s",
        )
        self.scheduler.add_job("retention_sweep", self.retention.sweep, self.config.retention_cron)
        await self.scheduler.start()
        # Backfill right away instead of waiting a full interval
        self._initial_scan = asyncio.create_task(
            self.scheduler.trigger_job("transcript_scan"), name="initial-scan",
        )

    async def _init_endpoints(self):
        if self.config.metrics_port:
            await start_metrics_server(self.config.metrics_port)
            logger.info("Metrics server on :%d", self.config.metrics_port)

        app = web.Application()
        app.router.add_get(HEALTH_PATH, self._health_handler)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", self.config.health_port)
        await site.start()
        self._health_server = runner

    # ── Health ───────────────────────────────────────────────────────────────

    def health_payload(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "uptime": round(time.monotonic() - self._started_at, 1),
            "gateway": {
                "connected": self.connection.is_connected if self.connection else False,
                "url": self.config.gateway_url,
            },
            "sessions_dir": self.config.sessions_dir,
        }

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.health_payload())

    # ── Shutdown ─────────────────────────────────────────────────────────────

    async def _cleanup(self):
        """Graceful shutdown."""
        if self._initial_scan is not None and not self._initial_scan.done():
            self._initial_scan.cancel()
            try:
                await self._initial_scan
            except asyncio.CancelledError:
                pass
        self._initial_scan = None
        if self.connection:
            await self.connection.stop()
        if self.scheduler:
            await self.scheduler.stop()
        if self.gateway:
            await self.gateway.close()
        if self._health_server:
            await self._health_server.cleanup()
        if self._db_engine:
            await self._db_engine.dispose()

    def request_shutdown(self):
        """Signal the collector to shut down gracefully."""
        self._shutdown_event.set()


def main():
    """CLI entrypoint — called by the container CMD."""
    try:
        config = load_collector_config()
    except ConfigError as e:
        configure_logging(logging.INFO)
        logger.critical("Configuration error: %s", e)
        sys.exit(1)

    configure_logging(logging.DEBUG if config.debug else logging.INFO)

    engine = CollectorEngine(config)
    loop = asyncio.new_event_loop()

    # Handle SIGTERM/SIGINT for container stop
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, engine.request_shutdown)

    try:
        loop.run_until_complete(engine.start())
    except KeyboardInterrupt:
        engine.request_shutdown()
        loop.run_until_complete(engine._cleanup())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
