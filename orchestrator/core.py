"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Wires the journal components together for one process.

- Logging setup (json or text)
- Database engine and session factory
- Credential resolution and adapter construction
- One coroutine per runtime mode
- Signal handling for the long-running stream mode

============================================================
ARCHITECTURAL POSITION
============================================================
- No reconciliation or detection logic lives here
- Each mode delegates to its package and returns a summary

============================================================
"""

import asyncio
import json
import logging
import signal
import sys
from contextlib import AsyncExitStack
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from data_retention import RetentionManager, RetentionPolicy
from exchange.base import ExchangeAdapter
from exchange.factory import create_adapter
from market_structure import CollectorConfig, MarketStructureService
from reconciliation.config import SchedulerConfig, SyncConfig
from reconciliation.engine import ReconciliationEngine
from reconciliation.errors import ConnectionInactiveError, CredentialError
from reconciliation.types import SyncResult
from storage.database import (
    create_database_engine,
    create_session_factory,
    DatabaseConfig,
    init_db,
    transaction_scope,
)
from storage.models.journal import UserExchange
from storage.repositories.connections import ConnectionRepository
from streaming import StreamConfig, StreamingCorrelator, StreamState

from .credentials import CredentialResolver, EnvCredentialResolver
from .jobs import JobRunner, SyncScheduler
from .models import JobOutcome, RunSummary, RuntimeMode


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
) -> logging.Logger:
    """
    Set up process logging.

    Args:
        level: Log level
        log_format: Output format (json or text)

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # aiohttp access noise
    logging.getLogger("aiohttp").setLevel(max(log_level, logging.WARNING))

    return logging.getLogger("orchestrator")


logger = logging.getLogger(__name__)


# ============================================================
# RUNTIME
# ============================================================

class JournalRuntime:
    """
    Process-level wiring for the trade journal.

    One instance per process. Every public coroutine maps to a
    RuntimeMode and returns a RunSummary.
    """

    def __init__(
        self,
        engine: Engine,
        session_factory: Optional[sessionmaker] = None,
        credentials: Optional[CredentialResolver] = None,
        adapter_factory: Callable[..., ExchangeAdapter] = create_adapter,
        sync_config: Optional[SyncConfig] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        collector_config: Optional[CollectorConfig] = None,
        retention_policy: Optional[RetentionPolicy] = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory or create_session_factory(engine)
        self._credentials = credentials or EnvCredentialResolver()
        self._adapter_factory = adapter_factory
        self._collector_config = collector_config or CollectorConfig()
        self._retention_policy = retention_policy or RetentionPolicy()

        self._reconciliation = ReconciliationEngine(
            self._session_factory,
            self.adapter_for,
            config=sync_config,
        )
        self._scheduler = SyncScheduler(
            self._session_factory,
            self._reconciliation,
            runner=JobRunner(),
            config=scheduler_config,
        )
        self._correlator: Optional[StreamingCorrelator] = None

    @classmethod
    def from_url(cls, database_url: Optional[str] = None, **kwargs: Any) -> "JournalRuntime":
        config = DatabaseConfig(url=database_url) if database_url else DatabaseConfig.from_env()
        return cls(create_database_engine(config), **kwargs)

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory

    @property
    def scheduler(self) -> SyncScheduler:
        return self._scheduler

    # --------------------------------------------------------
    # ADAPTERS
    # --------------------------------------------------------

    def adapter_for(self, connection: UserExchange) -> ExchangeAdapter:
        """Signed adapter for a connection; raises CredentialError."""
        creds = self._credentials.resolve(connection.user_id, connection.exchange)
        return self._adapter_factory(
            connection.exchange,
            api_key=creds.api_key,
            api_secret=creds.api_secret,
            testnet=creds.testnet,
        )

    def _load_active_connection(self, user_id: int, exchange: str) -> UserExchange:
        with transaction_scope(self._session_factory) as session:
            connection = ConnectionRepository(session).get_for_user(user_id, exchange)
        if connection is None or not connection.is_active:
            raise ConnectionInactiveError(
                f"No active {exchange} connection for user {user_id}",
                user_id=user_id,
                exchange=exchange,
            )
        return connection

    # --------------------------------------------------------
    # MODES
    # --------------------------------------------------------

    def init_db(self) -> RunSummary:
        init_db(self._engine)
        return RunSummary(mode=RuntimeMode.INIT_DB, success=True)

    async def full_sync(self, user_id: int, exchange: str) -> RunSummary:
        job = self._scheduler.full_sync_job(user_id, exchange)
        return self._sync_summary(RuntimeMode.FULL_SYNC, await self._scheduler.runner.run(job))

    async def quick_sync(self, user_id: int, exchange: str) -> RunSummary:
        job = self._scheduler.quick_sync_job(user_id, exchange)
        return self._sync_summary(RuntimeMode.QUICK_SYNC, await self._scheduler.runner.run(job))

    async def sync_due(self, now: Optional[datetime] = None) -> RunSummary:
        outcomes = await self._scheduler.run_due(now)
        return RunSummary(
            mode=RuntimeMode.SYNC_DUE,
            success=all(o.succeeded for o in outcomes),
            details={"jobs": [o.to_dict() for o in outcomes]},
        )

    @staticmethod
    def _sync_summary(mode: RuntimeMode, outcome: JobOutcome) -> RunSummary:
        result = outcome.result
        return RunSummary(
            mode=mode,
            success=outcome.succeeded and not (isinstance(result, SyncResult) and result.has_errors),
            details=outcome.to_dict(),
        )

    async def stream(self, user_id: int, exchange: str) -> RunSummary:
        connection = self._load_active_connection(user_id, exchange)
        creds = self._credentials.resolve(connection.user_id, connection.exchange)

        self._correlator = StreamingCorrelator(
            user_id=user_id,
            api_key=creds.api_key,
            api_secret=creds.api_secret,
            session_factory=self._session_factory,
            config=StreamConfig.for_bybit(testnet=creds.testnet),
            exchange=exchange,
        )

        self._install_signal_handlers()
        try:
            state = await self._correlator.run()
        finally:
            self._restore_signal_handlers()

        stats = self._correlator.stats
        return RunSummary(
            mode=RuntimeMode.STREAM,
            success=state is not StreamState.FAILED,
            details={"state": state.value, **stats.to_dict()},
        )

    async def collect_market_data(self, now: Optional[datetime] = None) -> RunSummary:
        async with AsyncExitStack() as stack:
            market = await stack.enter_async_context(self._adapter_factory("bybit"))
            accounts: List[ExchangeAdapter] = []
            for connection in self._active_connections():
                try:
                    adapter = self.adapter_for(connection)
                except CredentialError as e:
                    logger.warning(f"Skipping positions for user {connection.user_id}: {e}")
                    continue
                accounts.append(await stack.enter_async_context(adapter))

            service = MarketStructureService(
                self._session_factory,
                market,
                config=self._collector_config,
                position_adapters=accounts,
            )
            report = await service.collect(now)

        return RunSummary(
            mode=RuntimeMode.MARKET_DATA,
            success=not report.failures,
            details=report.to_dict(),
        )

    def cleanup(self, dry_run: bool = False, now: Optional[datetime] = None) -> RunSummary:
        manager = RetentionManager(self._session_factory, policy=self._retention_policy, engine=self._engine)
        report = manager.run(dry_run=dry_run, now=now)
        return RunSummary(mode=RuntimeMode.CLEANUP, success=not report.errors, details=report.to_dict())

    def _active_connections(self) -> List[UserExchange]:
        with transaction_scope(self._session_factory) as session:
            return ConnectionRepository(session).list_active()

    # --------------------------------------------------------
    # SIGNALS
    # --------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install signal handlers for graceful stream shutdown."""
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self._on_signal(s)))

    def _restore_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    async def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, stopping stream")
        if self._correlator is not None:
            await self._correlator.stop()

    def dispose(self) -> None:
        self._engine.dispose()

    def describe(self) -> Dict[str, Any]:
        return {"database": self._engine.url.render_as_string(hide_password=True)}
