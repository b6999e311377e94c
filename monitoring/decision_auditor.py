import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


class DecisionAuditor:
    """Appends one JSON line per decision tick: entry status plus any actions taken."""

    def __init__(self, log_path: Optional[str] = None):
        self.log_path = Path(log_path or 'logs/decision_audit.jsonl')

    def record_tick(
        self,
        mode: str,
        market_slug: Optional[str],
        entry_status: Dict[str, Any],
        actions: List[Dict[str, Any]],
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = {
            'timestamp': time.time(),
            'mode': mode,
            'market': market_slug,
            'entry': entry_status,
            'actions': actions,
            'context': context or {},
        }
        self._write_entry(payload)

    def read(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if not self.log_path.exists():
            return []
        with self.log_path.open('r', encoding='utf-8') as handle:
            lines = [line for line in handle if line.strip()]
        if limit is not None:
            lines = lines[-limit:]
        return [json.loads(line) for line in lines]

    def _write_entry(self, payload: Dict):
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except OSError as exc:
            logger.error("Failed to persist decision audit log: %s", exc)
