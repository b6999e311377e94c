"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

from typing import Any, Dict


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dictionary section from a Config, SectionProxy, or dict."""
    if source is None:
        return {}

    if isinstance(source, dict):
        candidate = source.get(section, {})
    else:
        getter = getattr(source, 'get', None)
        candidate = getter(section, {}) if callable(getter) else {}

    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        candidate = to_dict()
    if isinstance(candidate, dict):
        return dict(candidate)
    return {}
