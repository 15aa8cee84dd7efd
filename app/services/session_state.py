from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterable

from app.errors import (
    CatalogFetchFailure,
    EmptySubscriptionSet,
    RelayError,
    StreamDisconnect,
    StreamGivesUpReconnecting,
)
from app.integrations.kite_ws import SUBSCRIBE_BATCH_SIZE, KiteWsClient
from app.schemas.session import SessionStatus
from app.services.instruments import InstrumentIndex, resolve_instruments
from app.services.quote_cache import PriceCache

logger = logging.getLogger(__name__)

NO_CREDENTIAL = "NO_CREDENTIAL"
RESOLVING = "RESOLVING"
STREAMING = "STREAMING"
IDLE = "IDLE"
ERROR = "ERROR"
CLOSED = "CLOSED"


class SessionController:
    """Owns the credential, the instrument index and the single live stream.

    ``set_credential`` calls are serialized; each one tears down the current
    stream before resolving instruments for the new credential. Stream
    callbacks carry the generation they were started under and are dropped
    once a newer credential has replaced it.
    """

    def __init__(
        self,
        *,
        universe: Iterable[str],
        rest_client: Any,
        price_cache: PriceCache | None = None,
        index: InstrumentIndex | None = None,
        exchange: str = "NSE",
        ws_url: str = "wss://ws.kite.trade",
        batch_size: int = SUBSCRIBE_BATCH_SIZE,
        max_retries: int = 50,
        join_timeout_sec: float = 1.0,
        stream_factory: Callable[..., Any] | None = None,
        thread_factory: Callable[..., Any] = threading.Thread,
    ) -> None:
        self.universe = list(universe)
        self.rest_client = rest_client
        self.price_cache = price_cache if price_cache is not None else PriceCache()
        self.index = index if index is not None else InstrumentIndex()
        self.exchange = exchange
        self.ws_url = ws_url
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.join_timeout_sec = join_timeout_sec
        self._stream_factory = stream_factory or self._default_stream_factory
        self._thread_factory = thread_factory

        self._rotation_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._status = SessionStatus(updated_at=int(time.time()))
        self._credential = ""
        self._generation = 0
        self._stream: Any = None
        self._thread: Any = None

    # --- public API ---

    @property
    def state(self) -> str:
        return self._status.state

    @property
    def ws_connected(self) -> bool:
        return self._status.ws_connected

    @property
    def tracked(self) -> int:
        return len(self.universe)

    @property
    def stream(self) -> Any:
        return self._stream

    def status(self) -> SessionStatus:
        with self._state_lock:
            return self._status.model_copy(deep=True)

    def set_credential(self, access_token: str, source: str = "api") -> SessionStatus:
        """Install a new access token and (re)start the stream for it."""
        token = (access_token or "").strip()
        if not token:
            raise ValueError("access token must not be empty")

        with self._rotation_lock:
            with self._state_lock:
                self._generation += 1
                generation = self._generation
                self._credential = token
                old_stream, old_thread = self._stream, self._thread
                self._stream = None
                self._thread = None
                self._status.has_credential = True
                self._status.ws_connected = False
                self._status.subscribed = 0
                self._status.reconnect_count = 0
                self._status.generation = generation
                self._transition(RESOLVING, source)

            self._teardown(old_stream, old_thread)

            mapping = self._resolve(token)
            if mapping is None:
                return self.status()

            self._start_stream(token, list(mapping.values()), generation, source)
            return self.status()

    def on_ticks(self, ticks: list[dict]) -> int:
        """Write ticks into the price cache. Returns the number of entries written."""
        written = 0
        now = time.time()
        for tick in ticks:
            symbol = self.index.symbol_for(tick.get("instrument_token"))
            if symbol is None:
                continue
            price = tick.get("last_price") or tick.get("ltp") or tick.get("close")
            if not price:
                continue
            self.price_cache.set(symbol, price, now)
            written += 1
        return written

    def close(self) -> None:
        with self._rotation_lock:
            with self._state_lock:
                self._generation += 1
                old_stream, old_thread = self._stream, self._thread
                self._stream = None
                self._thread = None
                self._status.ws_connected = False
                self._status.generation = self._generation
                self._transition(CLOSED, "shutdown")
            self._teardown(old_stream, old_thread)

    # --- internal ---

    def _transition(self, state: str, source: str) -> None:
        previous = self._status.state
        self._status.state = state
        self._status.source = source
        self._status.updated_at = int(time.time())
        if previous != state:
            logger.info("[SESSION][transition] from=%s to=%s source=%s", previous, state, source)

    def _record_error(self, exc: RelayError) -> None:
        self._status.last_error = str(exc)
        self._status.last_error_kind = exc.kind

    def _fail(self, exc: RelayError, source: str) -> None:
        with self._state_lock:
            self._record_error(exc)
            self._transition(IDLE, source)

    def _teardown(self, stream: Any, thread: Any) -> None:
        if stream is not None:
            try:
                stream.stop()
            except Exception as exc:
                logger.warning("[SESSION][teardown_failed] error=%s", exc)
        if thread is not None and thread is not threading.current_thread():
            try:
                thread.join(timeout=self.join_timeout_sec)
            except RuntimeError as exc:
                logger.warning("[SESSION][teardown_join_failed] error=%s", exc)

    def _resolve(self, token: str) -> dict[str, int] | None:
        self.rest_client.set_access_token(token)
        try:
            catalog = self.rest_client.get_instruments(self.exchange)
        except CatalogFetchFailure as exc:
            failure = exc
        except Exception as exc:
            failure = CatalogFetchFailure(str(exc))
        else:
            failure = None

        if failure is not None:
            self.index.clear()
            logger.error("[SESSION][catalog_fetch_failed] kind=%s error=%s", failure.kind, failure)
            self._fail(failure, "resolver")
            return None

        mapping = resolve_instruments(catalog, self.universe)
        self.index.replace(mapping)
        logger.info("[SESSION][instruments_loaded] resolved=%d tracked=%d", len(mapping), len(self.universe))
        with self._state_lock:
            self._status.resolved = len(mapping)

        if not mapping:
            empty = EmptySubscriptionSet("no instrument tokens to subscribe")
            logger.warning("[SESSION][empty_subscription_set] exchange=%s", self.exchange)
            self._fail(empty, "resolver")
            return None
        return mapping

    def _default_stream_factory(self, *, access_token: str, on_ticks, on_state_change, on_noreconnect) -> KiteWsClient:
        return KiteWsClient(
            on_ticks=on_ticks,
            api_key=getattr(self.rest_client, "api_key", ""),
            access_token=access_token,
            ws_url=self.ws_url,
            batch_size=self.batch_size,
            on_state_change=on_state_change,
            on_noreconnect=on_noreconnect,
        )

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _start_stream(self, token: str, tokens: list[int], generation: int, source: str) -> None:
        def on_ticks(ticks: list[dict]) -> None:
            if self._is_current(generation):
                self.on_ticks(ticks)

        def on_state_change(
            *,
            connected: bool,
            reconnect_count: int,
            last_error: str | None,
            subscribed: int | None = None,
            **_: Any,
        ) -> None:
            with self._state_lock:
                if not self._is_current(generation):
                    return
                was_connected = self._status.ws_connected
                self._status.ws_connected = bool(connected)
                self._status.reconnect_count = int(reconnect_count)
                if connected:
                    if subscribed is not None:
                        self._status.subscribed = int(subscribed)
                elif was_connected:
                    self._record_error(StreamDisconnect(last_error or "stream disconnected"))

        def on_noreconnect(last_error: str | None) -> None:
            with self._state_lock:
                if not self._is_current(generation):
                    return
                self._status.ws_connected = False
                self._record_error(StreamGivesUpReconnecting(last_error or "stream gave up reconnecting"))
                self._transition(ERROR, "stream")
            logger.warning("[SESSION][stream_gave_up] generation=%d", generation)

        try:
            stream = self._stream_factory(
                access_token=token,
                on_ticks=on_ticks,
                on_state_change=on_state_change,
                on_noreconnect=on_noreconnect,
            )
            thread = self._thread_factory(
                target=self._run_stream,
                args=(stream, tokens, generation),
                daemon=True,
                name=f"kite-ws-worker-{generation}",
            )
        except Exception as exc:
            with self._state_lock:
                self._record_error(StreamDisconnect(f"stream start failed: {exc}"))
                self._transition(ERROR, source)
            raise
        with self._state_lock:
            self._stream = stream
            self._thread = thread
            self._transition(STREAMING, source)
        logger.info("[SESSION][stream_start] generation=%d tokens=%d", generation, len(tokens))
        thread.start()

    def _run_stream(self, stream: Any, tokens: list[int], generation: int) -> None:
        try:
            stopped = stream.run_with_reconnect(
                connect_once=lambda: stream.connect_and_subscribe(tokens),
                max_retries=self.max_retries,
            )
        except Exception as exc:
            logger.exception("[SESSION][stream_crashed] generation=%d", generation)
            with self._state_lock:
                if self._is_current(generation):
                    self._status.ws_connected = False
                    self._record_error(StreamDisconnect(str(exc)))
                    self._transition(ERROR, "stream")
            return

        with self._state_lock:
            if not self._is_current(generation) or self._status.state != STREAMING:
                return
            self._status.ws_connected = False
            self._transition(CLOSED if stopped else ERROR, "stream")
        logger.warning("[SESSION][stream_exit] generation=%d stopped=%s", generation, stopped)
