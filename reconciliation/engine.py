"""
Reconciliation - Engine.

============================================================
PURPOSE
============================================================
Batch reconciliation of one (user, exchange) connection:

- full_sync:  executions since the last cursor, in 7-day chunks
- quick_sync: trailing 24h executions, then closed-PnL closure,
              then live position upserts

============================================================
FAILURE HANDLING
============================================================
- Provider / rate-limit / network error on one category or
  page: logged, recorded on the SyncResult, unit skipped
- Auth / permission error: connection deactivated, run
  aborted with SyncAuthError (never retried)
- Anything else propagates to the job runner for retry

Progress is committed after every unit, so a retried run
resumes through execution-id dedupe rather than redoing work.

============================================================
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterator, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from exchange.base import ClosedPnLRecord, ExchangeAdapter, PositionRecord, datetime_to_ms
from exchange.errors import ExchangeException, is_auth_failure
from reconciliation.aggregator import FillAggregator, opposite_side
from reconciliation.config import SyncConfig
from reconciliation.errors import ConnectionInactiveError, InvalidSettingsError, SyncAuthError
from reconciliation.types import ConnectionSettings, SyncKind, SyncResult, SyncUnitError
from storage.models.base import utcnow
from storage.models.journal import Trade, TradeSource, TradeStatus, UserExchange
from storage.repositories.connections import ConnectionRepository
from storage.repositories.trades import TradeRepository


logger = logging.getLogger(__name__)


AdapterProvider = Callable[[UserExchange], ExchangeAdapter]


def split_window(
    start: datetime,
    end: datetime,
    max_span: timedelta,
) -> Iterator[Tuple[datetime, datetime]]:
    """Split [start, end] into consecutive chunks no wider than `max_span`."""
    cursor = start
    while cursor < end:
        chunk_end = min(cursor + max_span, end)
        yield cursor, chunk_end
        cursor = chunk_end


class ReconciliationEngine:
    """
    Reconciles exchange history into the trade journal.

    ============================================================
    USAGE
    ============================================================
    ```python
    engine = ReconciliationEngine(session_factory, adapter_provider)
    result = await engine.full_sync(user_id=1, exchange="bybit")
    ```

    `adapter_provider(connection)` resolves credentials and builds
    the adapter; a CredentialError raised there aborts the run
    before any request is made.
    ============================================================
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        adapter_provider: AdapterProvider,
        config: Optional[SyncConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._adapter_provider = adapter_provider
        self._config = config or SyncConfig()
        self._sleep = sleep

    # =========================================================
    # PUBLIC API
    # =========================================================

    async def full_sync(
        self,
        user_id: int,
        exchange: str,
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """Pull executions from the last cursor (or initial lookback) up to now."""
        return await self._run(SyncKind.FULL, user_id, exchange, now or utcnow())

    async def quick_sync(
        self,
        user_id: int,
        exchange: str,
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """Trailing-24h pass: fills, closed-PnL closure and position upserts."""
        return await self._run(SyncKind.QUICK, user_id, exchange, now or utcnow())

    # =========================================================
    # RUN
    # =========================================================

    async def _run(self, kind: SyncKind, user_id: int, exchange: str, now: datetime) -> SyncResult:
        session: Session = self._session_factory()
        try:
            connections = ConnectionRepository(session)
            connection = connections.get_for_user(user_id, exchange)
            if connection is None or not connection.is_active:
                raise ConnectionInactiveError(
                    f"No active {exchange} connection for user {user_id}",
                    user_id=user_id,
                    exchange=exchange,
                )

            try:
                settings = ConnectionSettings.from_stored(connection.sync_settings)
            except ValidationError as e:
                raise InvalidSettingsError(
                    f"Invalid sync settings: {e}", user_id=user_id, exchange=exchange
                ) from e

            adapter = self._adapter_provider(connection)
            result = SyncResult(user_id=user_id, exchange=exchange, kind=kind, started_at=now)

            logger.info(
                f"{kind.value} starting for user={user_id} exchange={exchange} "
                f"categories={settings.categories}"
            )

            if kind is SyncKind.FULL:
                start = connection.last_execution_time or now - self._config.initial_lookback
            else:
                start = now - self._config.quick_window

            async with adapter:
                fills_complete = await self._sync_executions(
                    session, adapter, connection, settings, start, now, result
                )
                if kind is SyncKind.QUICK:
                    await self._sync_closed_pnl(session, adapter, connection, settings, start, now, result)
                    await self._sync_positions(session, adapter, connection, settings, now, result)

            if kind is SyncKind.FULL:
                # a skipped execution page must be fetched again next run
                cursor = result.last_execution_time if fills_complete else None
                connections.mark_synced(connection, synced_at=now, last_execution_time=cursor)
            else:
                connections.mark_quick_synced(connection, synced_at=now)
            session.commit()

            result.completed_at = utcnow()
            logger.info(
                f"{kind.value} finished for user={user_id} exchange={exchange}: "
                f"{result.fills.executions_recorded} new fills, "
                f"{result.fills.trades_opened} opened, "
                f"{result.fills.trades_closed + result.closed_pnl_applied} closed, "
                f"{len(result.errors)} skipped units"
            )
            return result
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================
    # EXECUTIONS
    # =========================================================

    async def _sync_executions(
        self,
        session: Session,
        adapter: ExchangeAdapter,
        connection: UserExchange,
        settings: ConnectionSettings,
        start: datetime,
        end: datetime,
        result: SyncResult,
    ) -> bool:
        """
        Page executions for every configured category.

        Returns:
            False if any page was skipped because of an error
        """
        aggregator = FillAggregator(session, connection.user_id, connection.exchange, settings)
        complete = True

        for index, category in enumerate(settings.categories):
            if index:
                await self._sleep(self._config.category_delay_seconds)

            for chunk_start, chunk_end in split_window(start, end, self._config.execution_window):
                cursor: Optional[str] = None
                for page_number in range(self._config.max_pages_per_window):
                    if page_number:
                        await self._sleep(self._config.page_delay_seconds)
                    try:
                        page = await adapter.fetch_executions(
                            category,
                            start_time=chunk_start,
                            end_time=chunk_end,
                            cursor=cursor,
                            limit=self._config.page_limit,
                        )
                    except ExchangeException as e:
                        self._handle_unit_error(session, connection, result, "fetch_executions", category, e)
                        complete = False
                        break

                    result.fills.merge(aggregator.apply_page(page.items))
                    for record in page.items:
                        if record.is_trade:
                            result.observe_execution_time(record.execution_time)
                    session.commit()

                    if page.is_last(self._config.page_limit):
                        break
                    cursor = page.next_cursor
                else:
                    logger.warning(
                        f"Page cap reached for {category} executions "
                        f"{chunk_start.isoformat()}..{chunk_end.isoformat()}"
                    )
                    complete = False

        return complete

    # =========================================================
    # CLOSED PNL
    # =========================================================

    async def _sync_closed_pnl(
        self,
        session: Session,
        adapter: ExchangeAdapter,
        connection: UserExchange,
        settings: ConnectionSettings,
        start: datetime,
        end: datetime,
        result: SyncResult,
    ) -> None:
        for category in settings.categories:
            records: List[ClosedPnLRecord] = []
            cursor: Optional[str] = None
            try:
                for page_number in range(self._config.max_pages_per_window):
                    if page_number:
                        await self._sleep(self._config.page_delay_seconds)
                    page = await adapter.fetch_closed_pnl(
                        category,
                        start_time=start,
                        end_time=end,
                        cursor=cursor,
                        limit=self._config.page_limit,
                    )
                    records.extend(page.items)
                    if page.is_last(self._config.page_limit):
                        break
                    cursor = page.next_cursor
            except ExchangeException as e:
                self._handle_unit_error(session, connection, result, "fetch_closed_pnl", category, e)
                continue

            trades = TradeRepository(session)
            for record in sorted(records, key=lambda r: r.updated_time or r.created_time or end):
                if settings.allows_symbol(record.symbol):
                    self._apply_closed_pnl(trades, connection, record, end, result)
                    trades.flush()
            session.commit()

    def _apply_closed_pnl(
        self,
        trades: TradeRepository,
        connection: UserExchange,
        record: ClosedPnLRecord,
        now: datetime,
        result: SyncResult,
    ) -> None:
        user_id, exchange = connection.user_id, connection.exchange

        if trades.find_by_close_order(user_id, exchange, record.order_id) is not None:
            result.closed_pnl_duplicates += 1
            return

        exit_time = record.updated_time or record.created_time or now
        open_trades = trades.list_open(user_id, exchange, symbol=record.symbol)

        if len(open_trades) > 1:
            logger.warning(
                f"{len(open_trades)} open trades on {record.symbol} for closed-PnL "
                f"order {record.order_id}; closing the oldest",
                extra={"user_id": user_id, "exchange": exchange},
            )

        if open_trades:
            open_trades[0].close(
                exit_price=record.avg_exit_price,
                exit_time=exit_time,
                realized_pnl=record.closed_pnl,
                fee=record.total_fee,
                close_order_id=record.order_id,
            )
            result.closed_pnl_applied += 1
            return

        created = trades.create_trade(Trade(
            user_id=user_id,
            exchange=exchange,
            symbol=record.symbol,
            side=opposite_side(record.side),
            size=record.closed_size,
            entry_price=record.avg_entry_price,
            exit_price=record.avg_exit_price,
            entry_time=record.created_time or exit_time,
            exit_time=exit_time,
            external_id=f"pnl_{record.order_id}",
            close_order_id=record.order_id,
            realized_pnl=record.closed_pnl,
            fee=record.total_fee,
            status=TradeStatus.CLOSED.value,
            source=TradeSource.CLOSED_PNL.value,
            raw_data=record.raw or None,
        ))
        if created is None:
            result.closed_pnl_duplicates += 1
        else:
            result.closed_pnl_created += 1

    # =========================================================
    # POSITIONS
    # =========================================================

    async def _sync_positions(
        self,
        session: Session,
        adapter: ExchangeAdapter,
        connection: UserExchange,
        settings: ConnectionSettings,
        now: datetime,
        result: SyncResult,
    ) -> None:
        trades = TradeRepository(session)

        for index, category in enumerate(settings.categories):
            if index:
                await self._sleep(self._config.category_delay_seconds)
            try:
                positions = await adapter.fetch_positions(category)
            except ExchangeException as e:
                self._handle_unit_error(session, connection, result, "fetch_positions", category, e)
                continue

            for position in positions:
                if position.is_flat or not position.side or not settings.allows_symbol(position.symbol):
                    result.positions_skipped += 1
                    continue
                self._upsert_position(trades, connection, position, now)
                trades.flush()
                result.positions_upserted += 1
            session.commit()

    def _upsert_position(
        self,
        trades: TradeRepository,
        connection: UserExchange,
        position: PositionRecord,
        now: datetime,
    ) -> None:
        user_id, exchange = connection.user_id, connection.exchange
        open_trades = trades.list_open(user_id, exchange, symbol=position.symbol, side=position.side)
        if not open_trades:
            other_side = trades.list_open(user_id, exchange, symbol=position.symbol)
            if other_side:
                logger.warning(
                    f"Live {position.side} position on {position.symbol} but the open journal "
                    f"trade is {other_side[0].side}; recording the position as its own trade",
                    extra={"user_id": user_id, "exchange": exchange},
                )

        if len(open_trades) > 1:
            logger.warning(
                f"{len(open_trades)} open trades on {position.symbol}; "
                f"applying position snapshot to the oldest",
                extra={"user_id": user_id, "exchange": exchange},
            )

        if open_trades:
            open_trades[0].update_from_position(
                position.size, position.entry_price, position.unrealized_pnl
            )
            return

        created_time = position.created_time or now
        trades.create_trade(Trade(
            user_id=user_id,
            exchange=exchange,
            symbol=position.symbol,
            side=position.side,
            size=position.size,
            entry_price=position.entry_price,
            entry_time=created_time,
            external_id=f"pos_{position.symbol}_{datetime_to_ms(created_time)}",
            unrealized_pnl=position.unrealized_pnl,
            status=TradeStatus.OPEN.value,
            source=TradeSource.POSITION.value,
            raw_data=position.raw or None,
        ))

    # =========================================================
    # ERRORS
    # =========================================================

    def _handle_unit_error(
        self,
        session: Session,
        connection: UserExchange,
        result: SyncResult,
        operation: str,
        category: str,
        error: ExchangeException,
    ) -> None:
        """Record a skipped unit, or deactivate and abort on auth failure."""
        if is_auth_failure(error):
            session.rollback()
            ConnectionRepository(session).deactivate(connection, str(error))
            session.commit()
            raise SyncAuthError(
                f"Authentication failed during {operation}: {error}",
                user_id=connection.user_id,
                exchange=connection.exchange,
            ) from error

        logger.warning(
            f"{operation} failed for category={category}, skipping: {error}",
            extra={"user_id": connection.user_id, "exchange": connection.exchange},
        )
        result.errors.append(SyncUnitError(
            operation=operation,
            category=category,
            message=str(error),
            error_category=error.category.value,
        ))
