"""Settings service: operator configuration persisted in the options table.

SETTINGS_REGISTRY defines every known setting with its default and a
coercion function. Coercers return the cleaned value or raise ValueError
with a message suitable for showing to the operator.
"""
import hashlib
import logging
from typing import Any, Dict, List

from . import config
from .database.ops import DBOperations
from .exceptions import SettingsError
from .hooks import ExtensionRegistry

OPTION_NAME = 'media_cleanup_settings'


# --- Coercers ---

def _coerce_text(value: Any) -> str:
    text = str(value).strip()
    if not text:
        raise ValueError("Must not be empty")
    return text


def _coerce_batch_size(value: Any) -> int:
    try:
        size = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Must be an integer, got '{value}'")
    if not 1 <= size <= config.MAX_BATCH_SIZE:
        raise ValueError(f"Must be between 1 and {config.MAX_BATCH_SIZE}, got {size}")
    return size


def _coerce_bytes(value: Any) -> int:
    try:
        size = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Must be a byte count, got '{value}'")
    if size < 0:
        raise ValueError(f"Must be non-negative, got {size}")
    return size


def _coerce_scan_depth(value: Any) -> str:
    if value not in config.CONTENT_SCAN_DEPTHS:
        raise ValueError(f"Must be one of: {', '.join(config.CONTENT_SCAN_DEPTHS)}")
    return value


def _coerce_hash_algorithm(value: Any) -> str:
    algo = str(value).lower().strip()
    # shake digests need an explicit length
    if algo not in hashlib.algorithms_guaranteed or algo.startswith('shake_'):
        raise ValueError(f"Unsupported hash algorithm '{value}'")
    return algo


def _coerce_id_list(value: Any) -> List[int]:
    if isinstance(value, str):
        value = [v for v in value.split(',') if v.strip()]
    try:
        ids = [abs(int(v)) for v in value]
    except (TypeError, ValueError):
        raise ValueError("Must be a list of attachment ids")
    return sorted(set(i for i in ids if i > 0))


def _coerce_key_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split(',')
    return [str(v).strip() for v in value if str(v).strip()]


# --- Settings Registry ---
# Each entry: (default, coercer)

SETTINGS_REGISTRY = {
    'archive_folder_name':          ('Archive', _coerce_text),
    'scan_batch_size':              (config.DEFAULT_BATCH_SIZE, _coerce_batch_size),
    'content_scan_depth':           ('full', _coerce_scan_depth),
    'hash_algorithm':               (config.DEFAULT_HASH_ALGORITHM, _coerce_hash_algorithm),
    'oversized_threshold_image':    (config.DEFAULT_THRESHOLDS['image'], _coerce_bytes),
    'oversized_threshold_video':    (config.DEFAULT_THRESHOLDS['video'], _coerce_bytes),
    'oversized_threshold_audio':    (config.DEFAULT_THRESHOLDS['audio'], _coerce_bytes),
    'oversized_threshold_document': (config.DEFAULT_THRESHOLDS['document'], _coerce_bytes),
    'extra_meta_keys':              ([], _coerce_key_list),
    'protected_attachment_ids':     ([], _coerce_id_list),
}

DEFAULTS = {k: v[0] for k, v in SETTINGS_REGISTRY.items()}


class SettingsService:
    def __init__(self, db_ops: DBOperations, hooks: ExtensionRegistry):
        self.db = db_ops
        self.hooks = hooks

    def get(self) -> Dict[str, Any]:
        """Stored settings merged over defaults; unknown stored keys are dropped."""
        stored = self.db.get_option(OPTION_NAME, {}) or {}
        merged = dict(DEFAULTS)
        for key in SETTINGS_REGISTRY:
            if key in stored:
                merged[key] = stored[key]
        return merged

    def update(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validates and persists the known keys in params.
        Raises SettingsError listing every invalid value; nothing is written then.
        """
        current = self.get()
        updated = dict(current)
        errors = []

        for key, value in params.items():
            if key not in SETTINGS_REGISTRY:
                logging.debug(f"Ignoring unknown setting '{key}'.")
                continue
            _, coerce = SETTINGS_REGISTRY[key]
            try:
                updated[key] = coerce(value)
            except ValueError as e:
                errors.append(f"{key}: {e}")

        if errors:
            raise SettingsError("; ".join(errors))

        self.db.set_option(OPTION_NAME, updated)
        self.db.conn.commit()
        logging.info("Settings updated.")

        self.hooks.emit('settings_updated', updated, current)
        return updated

    # --- Resolved values ---

    def batch_size(self) -> int:
        size = self.hooks.apply_filters('scan_batch_size', self.get()['scan_batch_size'])
        return max(1, min(int(size), config.MAX_BATCH_SIZE))

    def hash_algorithm(self) -> str:
        return self.hooks.apply_filters('hash_algorithm', self.get()['hash_algorithm'])

    def thresholds(self) -> Dict[str, int]:
        settings = self.get()
        thresholds = {
            category: int(settings[f'oversized_threshold_{category}'])
            for category in config.DEFAULT_THRESHOLDS
        }
        return self.hooks.apply_filters('oversized_thresholds', thresholds)

    def meta_keys(self) -> List[str]:
        keys = list(config.PAGE_BUILDER_META_KEYS)
        for key in self.get()['extra_meta_keys']:
            if key not in keys:
                keys.append(key)
        return self.hooks.apply_filters('reference_meta_keys', keys)

    def archive_folder_name(self) -> str:
        return self.hooks.apply_filters('archive_folder_name', self.get()['archive_folder_name'])

    def content_scan_depth(self) -> str:
        return self.get()['content_scan_depth']

    def protected_ids(self) -> List[int]:
        return list(self.get()['protected_attachment_ids'])
