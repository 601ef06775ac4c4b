from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp
import websockets
from websockets.exceptions import WebSocketException

from ..models import Candle, Quote

log = logging.getLogger("binance")


def _rest_base(market: str) -> str:
    return "https://fapi.binance.com" if market == "futures" else "https://api.binance.com"


def _klines_path(market: str) -> str:
    return "/fapi/v1/klines" if market == "futures" else "/api/v3/klines"


def _book_ticker_path(market: str) -> str:
    return "/fapi/v1/ticker/bookTicker" if market == "futures" else "/api/v3/ticker/bookTicker"


def _ws_url(market: str) -> str:
    return "wss://fstream.binance.com/ws" if market == "futures" else "wss://stream.binance.com:9443/ws"


def _interval(tf: str) -> str:
    """Binance interval for '15m' or MetaTrader-style 'M15' timeframes."""
    raw = (tf or "").strip()
    up = raw.upper()
    if up[:1] in ("M", "H", "D") and up[1:].isdigit():
        return up[1:] + up[0].lower()
    return raw


def _ms_now() -> int:
    return int(time.time() * 1000)


class BinanceProvider:
    def __init__(
        self,
        market: str = "spot",
        *,
        rest_timeout_s: int = 20,
        ws_heartbeat_s: int = 20,
        rest_max_retries: int = 4,
        rest_backoff_s: float = 0.8,
        rest_conn_limit: int = 40,
        rest_conn_limit_per_host: int = 10,
    ):
        self.market = market
        self.rest_timeout_s = rest_timeout_s
        self.ws_heartbeat_s = ws_heartbeat_s

        # REST robustness
        self.rest_max_retries = rest_max_retries
        self.rest_backoff_s = rest_backoff_s
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            limit_per_host=self.rest_conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def _get_json(self, path: str, params: Dict[str, Any], what: str) -> Any:
        url = _rest_base(self.market) + path
        sess = await self._get_session()

        backoff = float(self.rest_backoff_s)
        last_err: Optional[BaseException] = None
        data: Any = None
        for attempt in range(1, int(self.rest_max_retries) + 1):
            try:
                async with sess.get(url, params=params) as resp:
                    # Rate-limit / ban signals
                    if resp.status in (418, 429):
                        txt = await resp.text()
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        log.warning(
                            "rest_rate_limited status=%s what=%s params=%s sleep=%.1fs body=%s",
                            resp.status,
                            what,
                            params,
                            sleep_s,
                            txt[:200],
                        )
                        await asyncio.sleep(sleep_s)
                        backoff = min(backoff * 2.0, 20.0)
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise RuntimeError(f"Binance {what} failed: {resp.status} {txt[:500]}")

                    # Some proxies return a wrong content-type; be tolerant.
                    data = await resp.json(content_type=None)

                last_err = None
                break

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= int(self.rest_max_retries):
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d what=%s params=%s backoff=%.1fs err=%s",
                    attempt,
                    self.rest_max_retries,
                    what,
                    params,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        if last_err is not None:
            raise last_err
        return data

    async def fetch_klines(self, symbol: str, timeframe: str, limit: int, *, closed_only: bool = True) -> List[Candle]:
        # one extra row: the newest kline is usually still forming
        params = {"symbol": symbol.upper(), "interval": _interval(timeframe), "limit": int(limit) + 1}
        data = await self._get_json(_klines_path(self.market), params, "klines")

        now_ms = _ms_now()
        out: List[Candle] = []
        for row in data or []:
            # [0]=open time, [6]=close time
            close_ms = int(row[6])
            if closed_only and close_ms >= now_ms:
                continue
            out.append(Candle(
                symbol=symbol.upper(),
                timeframe=timeframe,
                open_time_ms=int(row[0]),
                close_time_ms=close_ms,
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            ))
        return out[-int(limit):] if limit > 0 else []

    async def fetch_quote(self, symbol: str) -> Optional[Quote]:
        data = await self._get_json(_book_ticker_path(self.market), {"symbol": symbol.upper()}, "bookTicker")
        return _parse_book_ticker(data)

    async def stream_quotes(self, symbols: List[str]) -> AsyncIterator[Quote]:
        """Yields best bid/ask updates for `symbols`. Auto-reconnects."""
        streams = [f"{sym.lower()}@bookTicker" for sym in symbols]
        ws_url = _ws_url(self.market)

        sub_msg = {"method": "SUBSCRIBE", "params": streams, "id": 1}

        backoff = 1
        while True:
            try:
                async with websockets.connect(
                    ws_url,
                    ping_interval=self.ws_heartbeat_s,
                    ping_timeout=self.ws_heartbeat_s,
                    close_timeout=5,
                    max_queue=5000,
                ) as ws:
                    backoff = 1
                    await ws.send(json.dumps(sub_msg))
                    log.info("ws_subscribed streams=%d market=%s", len(streams), self.market)

                    async for msg in ws:
                        try:
                            j = json.loads(msg)
                        except ValueError:
                            continue
                        if "result" in j and j.get("id") == 1:
                            continue  # subscribe ack

                        data = j.get("data") or j
                        q = _parse_book_ticker(data)
                        if q is not None:
                            yield q

            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                log.warning("ws_error err=%s reconnect_in=%ss", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)


def _parse_book_ticker(data: Any) -> Optional[Quote]:
    if not isinstance(data, dict):
        return None
    sym = data.get("s") or data.get("symbol")
    bid = data.get("b") if "b" in data else data.get("bidPrice")
    ask = data.get("a") if "a" in data else data.get("askPrice")
    if not sym or bid is None or ask is None:
        return None
    ts = data.get("T") or data.get("E") or data.get("time") or _ms_now()
    try:
        return Quote(symbol=str(sym).upper(), bid=float(bid), ask=float(ask), time_ms=int(ts))
    except (TypeError, ValueError):
        return None
