import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)

OPEN = 'OPEN'
CLOSED = 'CLOSED'


def summarize_trades(trades: List[Dict[str, Any]]) -> Dict[str, Any]:
    closed = [t for t in trades if t.get('status') == CLOSED]
    pnls = [float(t.get('pnl') or 0.0) for t in closed]
    wins = sum(1 for p in pnls if p > 0)
    losses = sum(1 for p in pnls if p < 0)
    total = len(closed)
    return {
        'totalTrades': total,
        'wins': wins,
        'losses': losses,
        'totalPnL': round(sum(pnls), 2),
        'winRate': (wins / total * 100.0) if total else 0.0,
    }


class PaperLedger:
    """JSON-file ledger for paper trades, at most one of which is OPEN."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._data: Dict[str, Any] = {'trades': [], 'summary': summarize_trades([]), 'meta': {}}

    def load(self) -> None:
        if not self.path.exists():
            self._persist()
            return
        try:
            data = json.loads(self.path.read_text(encoding='utf-8') or '{}')
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Paper ledger at {self.path} is unreadable: {exc}") from exc
        trades = data.get('trades') if isinstance(data.get('trades'), list) else []
        meta = data.get('meta') if isinstance(data.get('meta'), dict) else {}
        self._data = {'trades': trades, 'summary': summarize_trades(trades), 'meta': meta}
        logger.info("Loaded paper ledger %s (%s trades)", self.path, len(trades))

    @property
    def trades(self) -> List[Dict[str, Any]]:
        return self._data['trades']

    def summary(self) -> Dict[str, Any]:
        return dict(self._data['summary'])

    def realized_offset(self) -> float:
        offset = self._data['meta'].get('realizedOffset', 0.0)
        try:
            return float(offset)
        except (TypeError, ValueError):
            return 0.0

    def realized_pnl(self) -> float:
        return float(self._data['summary'].get('totalPnL') or 0.0) + self.realized_offset()

    def get_open_trade(self) -> Optional[Dict[str, Any]]:
        for trade in reversed(self.trades):
            if trade.get('status') == OPEN:
                return dict(trade)
        return None

    def add_trade(self, trade: Dict[str, Any]) -> None:
        self.trades.append(dict(trade))
        self._refresh()

    def update_trade(self, trade_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        for trade in self.trades:
            if trade.get('id') == trade_id:
                trade.update(updates)
                self._refresh()
                return dict(trade)
        raise KeyError(trade_id)

    def _refresh(self) -> None:
        self._data['summary'] = summarize_trades(self.trades)
        self._persist()

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        tmp.write_text(json.dumps(self._data, indent=2, default=str), encoding='utf-8')
        tmp.replace(self.path)


class LiveTradeLog:
    """Append-only JSONL record of live order activity."""

    def __init__(self, path: str):
        self.path = Path(path)

    def append(self, event_type: str, **fields: Any) -> None:
        payload = {'type': event_type, 'ts': time.time(), **fields}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except OSError as exc:
            logger.error("Failed to append live trade log %s: %s", self.path, exc)

    def read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        entries = []
        with self.path.open('r', encoding='utf-8') as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except ValueError:
                    logger.warning("Skipping malformed live trade log line")
        return entries
