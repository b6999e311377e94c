import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds, AssetType, BalanceAllowanceParams, OrderArgs, OrderType
from py_clob_client.order_builder.constants import BUY, SELL

from config.trading_config import LiveSettings
from ingest.polymarket_rest import PolymarketAPIError, PolymarketRESTClient


__all__ = ["OrderBookLevels", "PolymarketTransport", "PolymarketAPIError"]

logger = logging.getLogger(__name__)

Level = Tuple[float, float]


@dataclass
class OrderBookLevels:
    token_id: str
    bids: List[Level] = field(default_factory=list)
    asks: List[Level] = field(default_factory=list)


@dataclass
class BalanceAllowance:
    balance: float
    allowance: float


class PolymarketTransport:
    """Thin adapter over the public CLOB REST API and the authenticated order client."""

    def __init__(self, settings: Optional[LiveSettings] = None, rest: Optional[PolymarketRESTClient] = None) -> None:
        self.settings = settings or LiveSettings()
        self._rest = rest
        self._clob: Optional[ClobClient] = None
        self._lock = asyncio.Lock()

    def _client(self) -> PolymarketRESTClient:
        if self._rest is None:
            self._rest = PolymarketRESTClient(self.settings.clob_host)
        return self._rest

    def _order_client(self) -> ClobClient:
        if self._clob is None:
            self._clob = self._build_clob_client()
        return self._clob

    def _build_clob_client(self) -> ClobClient:
        settings = self.settings
        if not settings.private_key:
            raise RuntimeError("Live trading requires PRIVATE_KEY")
        client = ClobClient(
            host=settings.clob_host,
            key=settings.private_key,
            chain_id=settings.chain_id,
            signature_type=settings.signature_type,
            funder=settings.funder_address,
        )
        if settings.api_key and settings.api_secret and settings.api_passphrase:
            client.set_api_creds(ApiCreds(
                api_key=settings.api_key,
                api_secret=settings.api_secret,
                api_passphrase=settings.api_passphrase,
            ))
        else:
            client.set_api_creds(client.create_or_derive_api_creds())
        logger.info("CLOB order client ready (host=%s, chain=%s)", settings.clob_host, settings.chain_id)
        return client

    # Public market data

    async def fetch_order_book(self, token_id: str) -> Optional[OrderBookLevels]:
        data = await self._client().get_order_book(token_id)
        if not isinstance(data, dict):
            return None
        return OrderBookLevels(
            token_id=token_id,
            bids=self._parse_levels(data.get("bids")),
            asks=self._parse_levels(data.get("asks")),
        )

    async def fetch_price(self, token_id: str, side: str) -> Optional[float]:
        data = await self._client().get_price(token_id, side)
        if isinstance(data, dict):
            data = data.get("price")
        price = self._as_float(data)
        if price is None or price <= 0:
            return None
        return price

    async def fetch_fee_rate_bps(self, token_id: str) -> Optional[float]:
        data = await self._client().get_fee_rate(token_id)
        if isinstance(data, dict):
            data = data.get("base_fee", data.get("fee_rate_bps"))
        bps = self._as_float(data)
        if bps is None or bps < 0:
            return None
        return bps

    # Authenticated account and order calls

    async def fetch_trades(self) -> List[Dict[str, Any]]:
        client = self._order_client()
        trades = await asyncio.to_thread(client.get_trades)
        return list(trades) if isinstance(trades, list) else []

    async def fetch_balance_allowance(self, token_id: Optional[str] = None) -> BalanceAllowance:
        client = self._order_client()
        data = await asyncio.to_thread(client.get_balance_allowance, params=self._allowance_params(token_id))
        data = data if isinstance(data, dict) else {}
        allowance = data.get("allowance")
        if allowance is None and isinstance(data.get("allowances"), dict):
            values = [self._as_float(v) or 0.0 for v in data["allowances"].values()]
            allowance = max(values) if values else 0.0
        return BalanceAllowance(
            balance=self._as_float(data.get("balance")) or 0.0,
            allowance=self._as_float(allowance) or 0.0,
        )

    async def update_balance_allowance(self, token_id: Optional[str] = None) -> None:
        client = self._order_client()
        await asyncio.to_thread(client.update_balance_allowance, params=self._allowance_params(token_id))

    async def place_limit_order(
        self,
        token_id: str,
        side: str,
        price: float,
        size: float,
        post_only: bool = False,
    ) -> Dict[str, Any]:
        client = self._order_client()
        args = OrderArgs(
            token_id=token_id,
            price=price,
            size=size,
            side=BUY if side.upper() == "BUY" else SELL,
        )
        signed = await asyncio.to_thread(client.create_order, args)
        if post_only:
            resp = await asyncio.to_thread(client.post_order, signed, OrderType.GTC, post_only=True)
        else:
            resp = await asyncio.to_thread(client.post_order, signed, OrderType.GTC)
        return resp if isinstance(resp, dict) else {"raw": resp}

    async def fetch_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        client = self._order_client()
        data = await asyncio.to_thread(client.get_order, order_id)
        return data if isinstance(data, dict) else None

    async def cancel_order(self, order_id: str) -> Any:
        client = self._order_client()
        return await asyncio.to_thread(client.cancel, order_id)

    async def cancel_all_orders(self) -> Any:
        client = self._order_client()
        return await asyncio.to_thread(client.cancel_all)

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    @staticmethod
    def _allowance_params(token_id: Optional[str]) -> BalanceAllowanceParams:
        if token_id:
            return BalanceAllowanceParams(asset_type=AssetType.CONDITIONAL, token_id=token_id)
        return BalanceAllowanceParams(asset_type=AssetType.COLLATERAL)

    @classmethod
    def _parse_levels(cls, raw: Any) -> List[Level]:
        levels: List[Level] = []
        for item in raw or []:
            if isinstance(item, dict):
                price, size = cls._as_float(item.get("price")), cls._as_float(item.get("size"))
            elif isinstance(item, (list, tuple)) and len(item) >= 2:
                price, size = cls._as_float(item[0]), cls._as_float(item[1])
            else:
                continue
            if price is None or size is None:
                continue
            levels.append((price, size))
        return levels

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
