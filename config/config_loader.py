import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).with_name('config.yaml')
SECTIONS = ('engine', 'trading', 'live', 'api', 'monitoring')

# ${NAME} or ${NAME:-fallback}
_PLACEHOLDER = re.compile(r'^\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}$')


class SectionProxy(Mapping):
    """Read-only view of one YAML mapping with attribute access."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(value)

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


def resolve_placeholder(value: str) -> Any:
    """Substitute an environment placeholder; unset names without a fallback stay verbatim."""
    match = _PLACEHOLDER.match(value)
    if not match:
        return value
    env_value = os.getenv(match.group('name'))
    if env_value is not None:
        return env_value
    default = match.group('default')
    return value if default is None else default


class Config:
    """YAML configuration with ``${ENV}`` placeholders resolved at load time.

    The file path comes from the constructor, then ``UPDOWN_CONFIG``, then the
    ``config.yaml`` shipped next to this module. Every known top-level section
    must be a mapping when present.
    """

    def __init__(self, config_path: Optional[str] = None):
        path = config_path or os.getenv('UPDOWN_CONFIG') or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration root in {self.config_path} must be a mapping")
        for section in SECTIONS:
            if raw.get(section) is not None and not isinstance(raw[section], dict):
                raise RuntimeError(f"Configuration section '{section}' must be a mapping")
        return self._resolve_env_vars(raw)

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str):
            return resolve_placeholder(node)
        return node

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        return _wrap(value)

    def to_dict(self) -> Dict[str, Any]:
        return self._data


config = Config()
