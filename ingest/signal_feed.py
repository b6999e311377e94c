import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp

from strategy.signals import SignalSnapshot


logger = logging.getLogger(__name__)


class SignalFeed:
    """Latest signal snapshot from a JSON file or an HTTP endpoint."""

    def __init__(self, source: Optional[str], timeout_s: float = 5.0):
        if source and str(source).startswith('${'):
            source = None
        self.source = source
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.fail_count = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def is_http(self) -> bool:
        return bool(self.source) and str(self.source).startswith(('http://', 'https://'))

    async def fetch(self) -> Optional[SignalSnapshot]:
        if not self.source:
            return None
        try:
            payload = await (self._fetch_http() if self.is_http else self._read_file())
        except (OSError, ValueError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.fail_count += 1
            logger.warning("Signal snapshot unavailable from %s (%s in a row): %s", self.source, self.fail_count, exc)
            return None
        if not isinstance(payload, dict):
            return None
        self.fail_count = 0
        return SignalSnapshot.from_dict(payload)

    async def _read_file(self) -> Optional[Dict[str, Any]]:
        path = Path(self.source)
        if not path.exists():
            return None
        text = await asyncio.to_thread(path.read_text, encoding='utf-8')
        return json.loads(text) if text.strip() else None

    async def _fetch_http(self) -> Any:
        session = await self._get_session()
        async with session.get(self.source) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

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
