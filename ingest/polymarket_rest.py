import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp


DEFAULT_CLOB_URL = "https://clob.polymarket.com"


class PolymarketAPIError(Exception):
    def __init__(self, status: int, message: Optional[str], body: str):
        self.status = status
        self.message = message
        self.body = body
        super().__init__(f"Polymarket API error (status={status}, msg={message})")


class PolymarketRESTClient:
    """Public (unauthenticated) CLOB REST endpoints over a shared aiohttp session."""

    def __init__(self, base_url: Optional[str] = None, timeout_s: float = 10.0):
        self.base_url = (base_url or DEFAULT_CLOB_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        async with session.get(url, params=params) as resp:
            text = await resp.text()
            payload: Any
            try:
                payload = json.loads(text) if text else None
            except ValueError:
                payload = text

            if resp.status >= 400:
                message = None
                if isinstance(payload, dict):
                    message = payload.get("error") or payload.get("message")
                raise PolymarketAPIError(resp.status, message, text)
            return payload

    async def get_order_book(self, token_id: str) -> Any:
        return await self.get("/book", params={"token_id": token_id})

    async def get_price(self, token_id: str, side: str) -> Any:
        return await self.get("/price", params={"token_id": token_id, "side": side.lower()})

    async def get_fee_rate(self, token_id: str) -> Any:
        return await self.get("/fee-rate", params={"token_id": token_id})
