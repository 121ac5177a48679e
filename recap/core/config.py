"""
Application configuration manager.
Stores settings in a JSON file under Application Support.
"""

import json
import logging
from pathlib import Path

from recap.core.constants import (
    CONFIG_PATH, ProviderType, GEMINI_MODEL, OLLAMA_ENDPOINT, OLLAMA_MODEL,
    FRAME_INTERVAL_SEC, CHECK_INTERVAL_SEC, MAX_GAP_SEC, TARGET_BATCH_SEC,
    MIN_BATCH_SEC, MAX_LOOKBACK_SEC, STORAGE_QUOTA_BYTES, DEFAULT_CATEGORIES,
)

logger = logging.getLogger(__name__)

# Validation bounds: key -> (type, min, max, default)
_NUMERIC_BOUNDS = {
    'frame_interval_sec': (int, 5, 300, FRAME_INTERVAL_SEC),
    'check_interval_sec': (int, 10, 3600, CHECK_INTERVAL_SEC),
    'max_gap_sec': (int, 10, 1800, MAX_GAP_SEC),
    'target_batch_sec': (int, 60, 3600, TARGET_BATCH_SEC),
    'min_batch_sec': (int, 0, 3600, MIN_BATCH_SEC),
    'max_lookback_sec': (int, 3600, 7 * 24 * 3600, MAX_LOOKBACK_SEC),
    'storage_quota_gb': (float, 0.5, 1024, STORAGE_QUOTA_BYTES / 1024 ** 3),
}

_DEFAULTS = {
    'provider_type': ProviderType.GEMINI,
    'gemini_model': GEMINI_MODEL,
    'ollama_endpoint': OLLAMA_ENDPOINT,
    'ollama_model': OLLAMA_MODEL,
    'frame_interval_sec': FRAME_INTERVAL_SEC,
    'check_interval_sec': CHECK_INTERVAL_SEC,
    'max_gap_sec': MAX_GAP_SEC,
    'target_batch_sec': TARGET_BATCH_SEC,
    'min_batch_sec': MIN_BATCH_SEC,
    'max_lookback_sec': MAX_LOOKBACK_SEC,
    'storage_quota_gb': STORAGE_QUOTA_BYTES / 1024 ** 3,
    'categories': DEFAULT_CATEGORIES,
    'generate_timelapses': True,
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _NUMERIC_BOUNDS:
            kind, low, high, default = _NUMERIC_BOUNDS[key]
            try:
                value = kind(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return default
            return max(low, min(high, value))

        if key == 'provider_type':
            if value not in (ProviderType.GEMINI, ProviderType.OLLAMA):
                logger.warning("Invalid provider_type %r, using gemini", value)
                return ProviderType.GEMINI

        if key in ('gemini_model', 'ollama_model', 'ollama_endpoint'):
            if not isinstance(value, str) or not value.strip():
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            value = value.strip()
            if key == 'ollama_endpoint':
                value = value.rstrip('/')

        if key == 'categories':
            if not isinstance(value, list):
                logger.warning("Invalid categories %r, using defaults", value)
                return DEFAULT_CATEGORIES
            cleaned = [c for c in value
                       if isinstance(c, dict) and str(c.get('name', '')).strip()]
            return cleaned or DEFAULT_CATEGORIES

        if key == 'generate_timelapses':
            return bool(value)

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def provider_type(self) -> str:
        return self._data.get('provider_type', ProviderType.GEMINI)

    @provider_type.setter
    def provider_type(self, value: str):
        self.set('provider_type', value)

    @property
    def storage_quota_bytes(self) -> int:
        return int(self._data.get('storage_quota_gb', 5) * 1024 ** 3)

    @property
    def categories(self) -> list[dict]:
        return list(self._data.get('categories') or DEFAULT_CATEGORIES)

    @property
    def generate_timelapses(self) -> bool:
        return self._data.get('generate_timelapses', True)
