import logging
import math
from typing import Optional, Tuple

from config.trading_config import TradingConfig


logger = logging.getLogger(__name__)


def _finite(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def compute_trade_size(balance: float, cfg: TradingConfig) -> float:
    """USD notional for the next entry.

    ``balance * stake_pct`` when a stake percentage is configured, otherwise the
    fixed contract size; clamped to the min/max trade size, capped at the
    balance and floored to the cent. Non-positive or non-finite balances size
    to zero.
    """
    if not _finite(balance) or balance <= 0:
        return 0.0

    stake_pct = cfg.stake_pct or 0.0
    if stake_pct > 0:
        size = balance * stake_pct
    else:
        size = cfg.contract_size if cfg.contract_size is not None else 100.0

    min_trade = cfg.min_trade_usd or 0.0
    max_trade = cfg.max_trade_usd if cfg.max_trade_usd is not None else math.inf
    size = max(min_trade, min(max_trade, size))
    size = min(size, balance)
    size = math.floor(size * 100) / 100.0

    if _finite(size) and size > 0:
        return size
    return 0.0


def compute_max_loss_usd(contract_size: Optional[float], cfg: TradingConfig) -> Optional[float]:
    """Per-trade loss cap: a clamped share of notional when dynamic, else the fixed amount."""
    if cfg.dynamic_stop_loss_enabled and _finite(contract_size) and contract_size > 0:
        raw = contract_size * cfg.dynamic_stop_loss_pct
        return max(cfg.min_max_loss_usd, min(cfg.max_max_loss_usd, raw))
    return cfg.max_loss_usd_per_trade


def cap_pnl(
    raw_pnl: float,
    contract_size: float,
    shares: float,
    exit_price: float,
    cfg: TradingConfig,
) -> Tuple[float, float]:
    """Clamp a realized loss to the max-loss cap.

    When the cap applies the exit price is rewritten so that
    ``shares * exit_price == contract_size + pnl`` still holds in the ledger.
    Returns ``(pnl, exit_price)``.
    """
    max_loss = compute_max_loss_usd(contract_size, cfg)
    if not (_finite(max_loss) and max_loss > 0 and _finite(raw_pnl)):
        return raw_pnl, exit_price

    cap = -abs(max_loss)
    if raw_pnl >= cap:
        return raw_pnl, exit_price

    implied_exit = (contract_size + cap) / shares if shares > 0 else exit_price
    if _finite(implied_exit) and implied_exit > 0:
        logger.info(
            "Capped realized PnL %.2f -> %.2f (exit %.4f -> %.4f)",
            raw_pnl, cap, exit_price, implied_exit,
        )
        return cap, implied_exit
    return cap, exit_price
