from __future__ import annotations

import json
import logging
import struct
import threading
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

SUBSCRIBE_BATCH_SIZE = 20

MODE_LTP = "ltp"
MODE_QUOTE = "quote"
MODE_FULL = "full"

# packet length -> mode
_PACKET_MODES = {8: MODE_LTP, 28: MODE_QUOTE, 32: MODE_FULL, 44: MODE_QUOTE, 184: MODE_FULL}

_SEGMENT_CDS = 3
_SEGMENT_BCD = 6


def _price_divisor(instrument_token: int) -> Decimal:
    segment = instrument_token & 0xFF
    if segment == _SEGMENT_CDS:
        return Decimal("10000000")
    if segment == _SEGMENT_BCD:
        return Decimal("10000")
    return Decimal("100")


def parse_binary(payload: bytes) -> List[Dict[str, Any]]:
    """Parse a Kite binary frame into ticks (instrument_token, last_price, mode).

    Only the leading token and last-price fields are read, which every packet
    mode carries. A 1-byte frame is a heartbeat and yields no ticks. A
    truncated packet ends the frame; ticks parsed before it are kept.
    """
    if len(payload) < 2:
        return []

    (count,) = struct.unpack(">H", payload[0:2])
    ticks: List[Dict[str, Any]] = []
    offset = 2
    for _ in range(count):
        if offset + 2 > len(payload):
            logger.warning("[WS][ws_frame_truncated] reason=packet header parsed=%d", len(ticks))
            break
        (length,) = struct.unpack(">H", payload[offset : offset + 2])
        offset += 2
        packet = payload[offset : offset + length]
        offset += length
        if len(packet) < 8 or len(packet) != length:
            logger.warning(
                "[WS][ws_frame_truncated] expected=%d got=%d parsed=%d", length, len(packet), len(ticks)
            )
            break

        token, raw_price = struct.unpack(">II", packet[0:8])
        ticks.append(
            {
                "instrument_token": token,
                "last_price": Decimal(raw_price) / _price_divisor(token),
                "mode": _PACKET_MODES.get(length, MODE_FULL),
            }
        )
    return ticks


def chunked(items: List[int], size: int = SUBSCRIBE_BATCH_SIZE) -> List[List[int]]:
    if size < 1:
        raise ValueError("batch size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]


class KiteWsClient:
    """Kite ticker websocket client: batched subscribe, tick parse, reconnect with backoff."""

    def __init__(
        self,
        on_ticks: Optional[Callable[[List[Dict[str, Any]]], None]] = None,
        *,
        api_key: str = "",
        access_token: str = "",
        ws_url: str = "wss://ws.kite.trade",
        batch_size: int = SUBSCRIBE_BATCH_SIZE,
        mode: str = MODE_LTP,
        websocket_app_factory: Optional[Callable[..., Any]] = None,
        on_state_change: Optional[Callable[..., None]] = None,
        on_noreconnect: Optional[Callable[[str | None], None]] = None,
    ) -> None:
        self._on_ticks = on_ticks
        self.api_key = api_key
        self.access_token = access_token
        self.base_ws_url = ws_url
        self.batch_size = batch_size
        self.mode = mode
        self.running = False
        self.connected = False
        self.last_error: str | None = None
        self.reconnect_count = 0
        self.failed_batches = 0
        self._websocket_app_factory = websocket_app_factory or self._default_websocket_app_factory
        self._on_state_change = on_state_change
        self._on_noreconnect = on_noreconnect
        self._ws_app: Any = None
        self._ws_lock = threading.Lock()
        self._stop_requested = False
        self._first_message_logged = False

    def _emit_state(self, *, connected: bool, subscribed: int | None = None) -> None:
        self.connected = connected
        if self._on_state_change is None:
            return
        self._on_state_change(
            connected=connected,
            reconnect_count=self.reconnect_count,
            last_error=self.last_error,
            subscribed=subscribed,
        )

    @property
    def ws_url(self) -> str:
        query = urlencode({"api_key": self.api_key, "access_token": self.access_token})
        return f"{self.base_ws_url}?{query}"

    def _default_websocket_app_factory(self, *args: Any, **kwargs: Any) -> Any:
        from websocket import WebSocketApp

        return WebSocketApp(*args, **kwargs)

    def stop(self) -> None:
        with self._ws_lock:
            self.running = False
            self._stop_requested = True
            self._first_message_logged = False
            ws_app = self._ws_app
            self._ws_app = None
        if ws_app is not None:
            ws_app.close()
        self._emit_state(connected=False)

    def build_subscribe_message(self, tokens: List[int]) -> Dict[str, Any]:
        return {"a": "subscribe", "v": list(tokens)}

    def build_mode_message(self, tokens: List[int]) -> Dict[str, Any]:
        return {"a": "mode", "v": [self.mode, list(tokens)]}

    def subscribe_batches(self, ws: Any, tokens: List[int]) -> int:
        """Subscribe in fixed-size batches. Returns the number of tokens in batches that succeeded."""
        ok = 0
        for batch in chunked(tokens, self.batch_size):
            try:
                ws.send(json.dumps(self.build_subscribe_message(batch)))
                ws.send(json.dumps(self.build_mode_message(batch)))
            except Exception as exc:
                self.failed_batches += 1
                logger.error("[WS][ws_subscribe_failed] tokens=%d error=%s", len(batch), exc)
                continue
            ok += len(batch)
            logger.info("[WS][ws_subscribe] tokens=%d mode=%s", len(batch), self.mode)
        return ok

    def handle_raw_message(self, payload: bytes | str) -> List[Dict[str, Any]]:
        if isinstance(payload, str):
            self._handle_text_message(payload)
            return []
        ticks = parse_binary(payload)
        if ticks and self._on_ticks is not None:
            self._on_ticks(ticks)
        return ticks

    def _handle_text_message(self, payload: str) -> None:
        try:
            message = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("[WS][ws_message_skip] reason=non-json text")
            return
        if isinstance(message, dict) and message.get("type") == "error":
            self.last_error = str(message.get("data"))
            logger.error("[WS][ws_server_error] %s", self.last_error)

    def connect_and_subscribe(self, tokens: List[int], *, run_forever: bool = True) -> Any:
        logger.info("[WS][ws_connect] url=%s tokens=%d", self.base_ws_url, len(tokens))
        state = {"opened": False}

        def _on_open(ws: Any) -> None:
            if self._stop_requested:
                ws.close()
                return
            state["opened"] = True
            logger.info("[WS][ws_connect_result] status=open")
            subscribed = self.subscribe_batches(ws, tokens)
            self._emit_state(connected=True, subscribed=subscribed)

        def _on_message(_: Any, raw_message: Any) -> None:
            if not self._first_message_logged:
                logger.info("[WS][ws_first_message] received=1")
                self._first_message_logged = True
            try:
                self.handle_raw_message(raw_message)
            except ValueError as exc:
                logger.warning("[WS][ws_message_skip] reason=%s", exc)

        def _on_error(_: Any, error: Any) -> None:
            self.last_error = str(error)
            logger.error("[WS][ws_error] %s", self.last_error)
            self._emit_state(connected=False)

        def _on_close(_: Any, code: Any, reason: Any) -> None:
            logger.warning("[WS][ws_close] code=%s reason=%s", code, reason)
            self._emit_state(connected=False)

        ws_app = self._websocket_app_factory(
            self.ws_url,
            header={"X-Kite-Version": "3"},
            on_open=_on_open,
            on_message=_on_message,
            on_error=_on_error,
            on_close=_on_close,
        )
        with self._ws_lock:
            if self._stop_requested:
                raise RuntimeError("ws_stopped")
            self._ws_app = ws_app

        if run_forever:
            ws_app.run_forever()
            if not state["opened"] and not self._stop_requested:
                raise RuntimeError("ws_open_not_confirmed")

        return ws_app

    def run_with_reconnect(
        self,
        *,
        connect_once: Callable[[], None],
        sleep_fn: Callable[[float], None] = time.sleep,
        max_retries: int = 50,
        backoff_base_sec: float = 1.0,
        backoff_cap_sec: float = 60.0,
    ) -> bool:
        """Keep the stream connected until stopped.

        Each ``connect_once`` call blocks until the socket closes. A session that
        opened resets the failure count; consecutive failures back off
        exponentially. Returns False after ``max_retries`` consecutive failures
        (the caller's give-up signal) and True when stopped.
        """
        if max_retries < 1:
            return False

        self.running = not self._stop_requested
        self.last_error = None
        self.reconnect_count = 0
        self._emit_state(connected=False)

        failures = 0
        while self.running:
            try:
                connect_once()
                failures = 0
                if not self.running:
                    break
                logger.warning("[WS][ws_disconnect] reconnecting")
            except Exception as exc:
                self.last_error = str(exc)
                failures += 1
                logger.warning("[WS][ws_connect_failed] attempt=%d error=%s", failures, exc)

            if not self.running:
                break

            self.reconnect_count += 1
            self._emit_state(connected=False)

            if failures >= max_retries:
                logger.error("[WS][ws_noreconnect] attempts=%d", failures)
                if self._on_noreconnect is not None:
                    self._on_noreconnect(self.last_error)
                return False

            backoff = min(backoff_base_sec * (2 ** max(failures - 1, 0)), backoff_cap_sec)
            sleep_fn(backoff)

        return True
