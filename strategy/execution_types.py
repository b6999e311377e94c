from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar('T')


class Side(str, Enum):
    UP = 'UP'
    DOWN = 'DOWN'

    @property
    def opposite(self) -> 'Side':
        return Side.DOWN if self is Side.UP else Side.UP

    @classmethod
    def parse(cls, value: Any) -> Optional['Side']:
        if isinstance(value, cls):
            return value
        if not value:
            return None
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


class Phase(str, Enum):
    EARLY = 'EARLY'
    MID = 'MID'
    LATE = 'LATE'


class GraceAction(str, Enum):
    START_GRACE = 'START_GRACE'
    CLEAR_GRACE = 'CLEAR_GRACE'


class PositionNotFoundError(RuntimeError):
    """Close requested for a position the executor does not hold."""

    def __init__(self, position_id: Optional[str]):
        self.position_id = position_id
        super().__init__(f"No open position with id {position_id!r}")


@dataclass
class FetchError:
    action: str
    message: str


@dataclass
class FetchResult(Generic[T]):
    """Outcome of a best-effort venue call: a value or the error that replaced it."""

    value: Optional[T] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value

    @classmethod
    def success(cls, value: T) -> 'FetchResult[T]':
        return cls(value=value)

    @classmethod
    def failure(cls, action: str, error: Exception) -> 'FetchResult[T]':
        return cls(error=FetchError(action=action, message=str(error) or type(error).__name__))


@dataclass
class GraceState:
    breach_at_ms: Optional[float] = None
    used: bool = False


@dataclass
class PositionView:
    """One open position, in the same shape for paper and live executors."""

    id: str
    side: Side
    market_slug: Optional[str]
    entry_price: Optional[float]
    shares: float
    contract_size: float
    mark: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    max_unrealized_pnl: Optional[float] = None
    min_unrealized_pnl: Optional[float] = None
    entry_time_ms: Optional[float] = None
    last_trade_time_s: Optional[float] = None
    token_id: Optional[str] = None
    tradable: bool = True

    @property
    def key(self) -> str:
        return self.id or self.token_id or 'default'

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['side'] = self.side.value
        return data


@dataclass
class OrderRequest:
    side: Side
    market_slug: str
    size_usd: float
    price: float
    phase: str = Phase.MID.value
    side_inferred: bool = False
    token_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderResult:
    filled: bool
    trade_id: Optional[str] = None
    fill_price: float = 0.0
    fill_shares: float = 0.0
    fill_size_usd: float = 0.0
    order_id: Optional[str] = None

    @classmethod
    def rejected(cls) -> 'OrderResult':
        return cls(filled=False)


@dataclass
class CloseRequest:
    position_id: str
    side: Side
    shares: float
    reason: str
    token_id: Optional[str] = None


@dataclass
class CloseResult:
    closed: bool
    exit_price: float = 0.0
    pnl: float = 0.0
    reason: Optional[str] = None


@dataclass
class BalanceSnapshot:
    balance: float
    starting: float
    realized: float

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)
