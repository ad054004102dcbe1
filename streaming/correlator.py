"""
Streaming - Execution Correlator.

============================================================
PURPOSE
============================================================
Long-lived private-stream connection for one user. Keeps a
connection-scoped position cache and turns closing executions
into closed Trade rows.

============================================================
STATE MACHINE
============================================================
DISCONNECTED -> CONNECTING -> AUTHENTICATING -> SUBSCRIBED
     ^              |  ^                            |
     |              |  +-------- error/close -------+
   stop()           +--> FAILED (attempts exhausted or auth rejected)

Reconnects run in a bounded loop with delays 0, 1, 2, 4, 8s.
The attempt counter resets after every successful subscribe.

============================================================
CONCURRENCY
============================================================
Messages are handled one at a time in delivery order. Trade
writes are idempotent on external_id = "exec_<execId>", so the
batch engine may write for the same user concurrently.

============================================================
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from exchange.base import ExecutionRecord
from exchange.bybit import parse_execution, parse_position
from storage.database import transaction_scope
from storage.models.journal import Trade, TradeStatus
from storage.repositories.exceptions import RepositoryError
from storage.repositories.trades import TradeRepository
from streaming.config import StreamConfig, reconnect_delay
from streaming.position_cache import PositionCache
from streaming.resolution import ClosedTradeResolution, resolve_closed_execution


logger = logging.getLogger(__name__)


# ============================================================
# STATE / ERRORS
# ============================================================

class StreamState(Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    AUTHENTICATING = "AUTHENTICATING"
    SUBSCRIBED = "SUBSCRIBED"
    CLOSING = "CLOSING"
    FAILED = "FAILED"


class StreamAuthError(Exception):
    """The stream rejected the auth handshake. Terminal, never retried."""


class StreamClosed(Exception):
    """The server closed the connection or the transport failed."""


@dataclass
class StreamStats:
    messages: int = 0
    malformed: int = 0
    positions: int = 0
    executions_ignored: int = 0
    trades_persisted: int = 0
    trades_inferred: int = 0
    duplicates: int = 0
    dropped: int = 0
    connections: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def build_auth_message(
    api_key: str,
    api_secret: str,
    now_ms: int,
    expiry_ms: int = 10000,
) -> Dict[str, Any]:
    """`{"op": "auth", "args": [key, expires, HMAC(secret, "GET/realtime" + expires)]}`"""
    expires = now_ms + expiry_ms
    signature = hmac.new(
        api_secret.encode("utf-8"),
        f"GET/realtime{expires}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return {"op": "auth", "args": [api_key, expires, signature]}


WebSocketFactory = Callable[[str], Awaitable[Any]]


# ============================================================
# CORRELATOR
# ============================================================

class StreamingCorrelator:
    """
    Private-stream correlator for one (user, exchange).

    `ws_factory(url)` must return an object with the aiohttp
    client websocket surface used here: `send_json`, `receive`,
    `close` and `closed`. The default opens one through a
    ClientSession owned by the correlator.
    """

    def __init__(
        self,
        user_id: int,
        api_key: str,
        api_secret: str,
        session_factory: sessionmaker,
        config: Optional[StreamConfig] = None,
        exchange: str = "bybit",
        ws_factory: Optional[WebSocketFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._user_id = user_id
        self._api_key = api_key
        self._api_secret = api_secret
        self._session_factory = session_factory
        self._config = config or StreamConfig()
        self._exchange = exchange
        self._ws_factory = ws_factory or self._open_websocket
        self._sleep = sleep

        self._state = StreamState.DISCONNECTED
        self._attempts = 0
        self._stopping = False
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws = None
        self._heartbeat_task: Optional[asyncio.Task] = None

        self.positions = PositionCache()
        self.stats = StreamStats()

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def attempts(self) -> int:
        """Consecutive connection attempts since the last successful subscribe."""
        return self._attempts

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def run(self) -> StreamState:
        """
        Connect and process messages until stopped or failed.

        Returns:
            Final state (DISCONNECTED after stop(), FAILED otherwise)

        Raises:
            StreamAuthError: If the auth handshake is rejected
        """
        self._stopping = False
        self._attempts = 0

        try:
            while not self._stopping:
                self._attempts += 1
                if self._attempts > self._config.max_reconnect_attempts:
                    self._state = StreamState.FAILED
                    logger.error(
                        f"Stream for user {self._user_id} failed after "
                        f"{self._config.max_reconnect_attempts} connection attempts"
                    )
                    break

                delay = reconnect_delay(self._attempts)
                if delay:
                    logger.info(f"Reconnecting in {delay:.0f}s (attempt {self._attempts})")
                    await self._sleep(delay)
                if self._stopping:
                    break

                try:
                    await self._connect_and_listen()
                except StreamAuthError:
                    self._state = StreamState.FAILED
                    logger.error(f"Stream auth rejected for user {self._user_id}")
                    raise
                except (StreamClosed, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                    if not self._stopping:
                        logger.warning(f"Stream connection lost for user {self._user_id}: {e}")
                finally:
                    await self._teardown()
        finally:
            if self._http is not None:
                await self._http.close()
                self._http = None

        if self._state is not StreamState.FAILED:
            self._state = StreamState.DISCONNECTED
        return self._state

    async def stop(self) -> None:
        """Request shutdown; run() returns after the current message."""
        self._stopping = True
        self._state = StreamState.CLOSING
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def _open_websocket(self, url: str):
        if self._http is None:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, connect=self._config.connect_timeout_seconds)
            )
        return await self._http.ws_connect(url)

    async def _connect_and_listen(self) -> None:
        self._state = StreamState.CONNECTING
        self._ws = await self._ws_factory(self._config.url)
        self.stats.connections += 1

        self._state = StreamState.AUTHENTICATING
        await self._authenticate()

        await self._ws.send_json({"op": "subscribe", "args": list(self._config.topics)})
        self._state = StreamState.SUBSCRIBED
        self._attempts = 0
        logger.info(f"Stream subscribed for user {self._user_id}: {', '.join(self._config.topics)}")

        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        await self._listen()

    async def _authenticate(self) -> None:
        await self._ws.send_json(build_auth_message(
            self._api_key,
            self._api_secret,
            now_ms=int(time.time() * 1000),
            expiry_ms=self._config.auth_expiry_ms,
        ))

        while True:
            payload = await self._receive_payload(timeout=self._config.auth_timeout_seconds)
            if payload is None:
                continue
            if payload.get("op") != "auth":
                continue
            if not payload.get("success"):
                raise StreamAuthError(payload.get("ret_msg") or "auth rejected")
            return

    async def _listen(self) -> None:
        while not self._stopping:
            payload = await self._receive_payload()
            if payload is not None:
                self.handle_message(payload)

    async def _receive_payload(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next JSON object from the socket; None for frames that carry none."""
        msg = await self._ws.receive(timeout=timeout)

        if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
            raise StreamClosed(f"socket closed ({msg.data})")
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise StreamClosed(f"socket error: {self._ws.exception()}")
        if msg.type != aiohttp.WSMsgType.TEXT:
            return None

        self.stats.messages += 1
        try:
            payload = json.loads(msg.data)
        except (TypeError, ValueError):
            self.stats.malformed += 1
            logger.warning(f"Skipping non-JSON stream frame: {str(msg.data)[:200]}")
            return None
        if not isinstance(payload, dict):
            self.stats.malformed += 1
            return None
        return payload

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._config.ping_interval_seconds)
            if self._ws is None or self._ws.closed:
                return
            await self._ws.send_json({"op": "ping"})

    async def _teardown(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.debug(f"Heartbeat ended with {e}")
            self._heartbeat_task = None

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None

        if self._state is not StreamState.FAILED:
            self._state = StreamState.CLOSING if self._stopping else StreamState.CONNECTING

    # --------------------------------------------------------
    # MESSAGE HANDLING
    # --------------------------------------------------------

    def handle_message(self, payload: Dict[str, Any]) -> None:
        """Apply one decoded stream message."""
        topic = payload.get("topic")
        if topic is None:
            if payload.get("op") == "subscribe" and not payload.get("success", True):
                logger.error(f"Subscription rejected: {payload.get('ret_msg')}")
            return

        data = payload.get("data") or []
        if topic.startswith("position"):
            for item in data:
                self._handle_position(item)
        elif topic.startswith("execution"):
            for item in data:
                self._handle_execution(item)

    def _handle_position(self, item: Dict[str, Any]) -> None:
        try:
            position = parse_position(item)
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            self.stats.malformed += 1
            logger.warning(f"Skipping malformed position message: {e}")
            return
        self.positions.update(position)
        self.stats.positions += 1

    def _handle_execution(self, item: Dict[str, Any]) -> None:
        try:
            execution = parse_execution(item)
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            self.stats.malformed += 1
            logger.warning(f"Skipping malformed execution message: {e}")
            return

        if not execution.is_trade or not execution.is_closing:
            self.stats.executions_ignored += 1
            return

        resolution = resolve_closed_execution(
            execution,
            self.positions.get(execution.symbol),
            allow_inference=self._config.allow_pnl_inference,
        )
        if resolution is None:
            self.stats.dropped += 1
            logger.warning(
                f"No position snapshot for {execution.symbol}; dropping closing "
                f"execution {execution.execution_id} (PnL inference disabled)"
            )
            return

        if resolution.is_inferred:
            logger.warning(
                f"No position snapshot for {execution.symbol}; inferred "
                f"{resolution.side} entry {resolution.entry_price} from PnL "
                f"for execution {execution.execution_id}"
            )
        self._persist(execution, resolution)

    def _persist(self, execution: ExecutionRecord, resolution: ClosedTradeResolution) -> None:
        """A storage failure drops this execution; the stream keeps running."""
        try:
            with transaction_scope(self._session_factory) as session:
                created = TradeRepository(session).create_trade(Trade(
                    user_id=self._user_id,
                    exchange=self._exchange,
                    symbol=execution.symbol,
                    side=resolution.side,
                    size=resolution.size,
                    entry_price=resolution.entry_price,
                    exit_price=resolution.exit_price,
                    entry_time=execution.execution_time,
                    exit_time=execution.execution_time,
                    external_id=f"exec_{execution.execution_id}",
                    order_id=execution.order_id,
                    realized_pnl=resolution.realized_pnl,
                    fee=execution.fee,
                    status=TradeStatus.CLOSED.value,
                    source=resolution.trade_source.value,
                    raw_data=execution.raw or None,
                ))
        except (RepositoryError, SQLAlchemyError) as e:
            self.stats.dropped += 1
            logger.warning(
                f"Could not store closing execution {execution.execution_id} "
                f"for {execution.symbol}: {e}",
                extra={"user_id": self._user_id, "exchange": self._exchange},
            )
            return

        if created is None:
            self.stats.duplicates += 1
            return
        self.stats.trades_persisted += 1
        if resolution.is_inferred:
            self.stats.trades_inferred += 1
        logger.info(
            f"Stream closed trade {execution.symbol} {resolution.side} "
            f"size={resolution.size} pnl={resolution.realized_pnl} ({resolution.source.value})",
            extra={"user_id": self._user_id, "exchange": self._exchange},
        )
