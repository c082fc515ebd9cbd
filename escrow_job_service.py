#!/usr/bin/env python3
"""
Escrow Job Service - deterministic startup and graceful shutdown

Startup sequence:
1. Logging and configuration checks
2. Store (SQL when DATABASE_URL is set, otherwise in-memory)
3. Notifier from the configured alert channels
4. EscrowService on top of the caller's payment gateway
5. BackgroundJobManager with the three escrow jobs

The payment gateway is supplied by the embedding application; this module
never talks to a processor on its own.
"""

import asyncio
import logging
import signal
from typing import Optional

from config import Config
from jobs.background_job_manager import BackgroundJobManager
from jobs.escrow_jobs import build_job_manager
from services.escrow_service import EscrowService
from services.escrow_store import EscrowStore, InMemoryEscrowStore, SqlAlchemyEscrowStore
from services.job_admin import JobAdminService
from services.notification_service import Notifier, build_notifier
from services.payment_gateway import PaymentGateway
from utils.logging_setup import configure_logging

logger = logging.getLogger(__name__)


class EscrowJobServiceRunner:
    """Builds the service graph once and runs the job manager until told to stop"""

    def __init__(self, gateway: PaymentGateway, notifier: Optional[Notifier] = None):
        self.gateway = gateway
        self.notifier = notifier
        self.engine = None
        self.store: Optional[EscrowStore] = None
        self.service: Optional[EscrowService] = None
        self.manager: Optional[BackgroundJobManager] = None
        self.admin: Optional[JobAdminService] = None
        self._stop_requested: Optional[asyncio.Event] = None

    async def initialize_store(self) -> EscrowStore:
        if not Config.DATABASE_URL:
            logger.info("🗄️ DATABASE_URL not set, using in-memory escrow store")
            return InMemoryEscrowStore()

        from database import build_async_engine, build_session_factory, create_tables

        self.engine = build_async_engine()
        await create_tables(self.engine)
        return SqlAlchemyEscrowStore(build_session_factory(self.engine))

    async def start(self) -> None:
        configure_logging()
        Config.validate_payment_bounds()
        Config.log_environment_config()

        self.store = await self.initialize_store()
        self.service = EscrowService(
            store=self.store,
            gateway=self.gateway,
            notifier=self.notifier or build_notifier(Config),
        )
        self.manager = build_job_manager(self.service, Config.job_config())
        self.admin = JobAdminService(self.manager)
        await self.manager.start()
        logger.info("🚀 Escrow job service started")

    async def stop(self) -> None:
        if self.manager is not None:
            await self.manager.stop()
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
        logger.info("✅ Escrow job service stopped")

    def request_stop(self) -> None:
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def run_until_stopped(self, install_signal_handlers: bool = True) -> None:
        self._stop_requested = asyncio.Event()
        await self.start()

        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self.request_stop)
                except NotImplementedError:
                    logger.warning(f"⚠️ Signal handler for {sig.name} not supported on this platform")

        try:
            await self._stop_requested.wait()
            logger.info("🛑 Stop requested, initiating shutdown...")
        finally:
            await self.stop()
