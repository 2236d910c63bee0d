"""
Extension points for collaborators.

Callers register implementations at startup; the reference index,
detectors and orchestrator query the registry directly.
"""
import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Any

# Returns attachment ids that must never be reported as unused
ProtectedIdSource = Callable[[], Iterable[int]]

# Receives (attachment_id, is_unused) and returns the final verdict
UnusedOverride = Callable[[int, bool], bool]

EVENTS = (
    'scan_complete',
    'before_bulk_action',
    'media_archived',
    'media_trashed',
    'media_restored',
    'media_deleted',
    'media_flagged',
    'settings_updated',
)

FILTERS = (
    'oversized_thresholds',
    'hash_algorithm',
    'reference_meta_keys',
    'scan_batch_size',
    'archive_folder_name',
)


@dataclass
class CustomReferenceSource:
    """Maps a content item id to the attachment ids it uses."""
    type: str
    callback: Callable[[int], Iterable[int]]

    @property
    def source_type(self) -> str:
        key = re.sub(r'[^a-z0-9_\-]', '', self.type.lower())
        return key or 'custom'


class ExtensionRegistry:
    def __init__(self):
        self.protected_sources: List[ProtectedIdSource] = []
        self.reference_sources: List[CustomReferenceSource] = []
        self.unused_overrides: List[UnusedOverride] = []
        self._filters: Dict[str, List[Callable[[Any], Any]]] = defaultdict(list)
        self._listeners: Dict[str, List[Callable[..., None]]] = defaultdict(list)

    # --- Typed slots ---

    def register_protected_ids(self, source: ProtectedIdSource):
        self.protected_sources.append(source)

    def register_reference_source(self, source_type: str, callback: Callable[[int], Iterable[int]]):
        self.reference_sources.append(CustomReferenceSource(source_type, callback))

    def register_unused_override(self, override: UnusedOverride):
        self.unused_overrides.append(override)

    def protected_ids(self) -> set:
        ids = set()
        for source in self.protected_sources:
            ids.update(int(i) for i in source() or [])
        return ids

    def is_unused(self, attachment_id: int) -> bool:
        verdict = True
        for override in self.unused_overrides:
            verdict = bool(override(attachment_id, verdict))
        return verdict

    # --- Filters ---

    def add_filter(self, name: str, callback: Callable[[Any], Any]):
        if name not in FILTERS:
            raise ValueError(f"Unknown filter '{name}'. Must be one of: {', '.join(FILTERS)}")
        self._filters[name].append(callback)

    def apply_filters(self, name: str, value: Any) -> Any:
        for callback in self._filters.get(name, []):
            value = callback(value)
        return value

    # --- Events ---

    def subscribe(self, event: str, listener: Callable[..., None]):
        if event not in EVENTS:
            raise ValueError(f"Unknown event '{event}'. Must be one of: {', '.join(EVENTS)}")
        self._listeners[event].append(listener)

    def emit(self, event: str, *args):
        for listener in self._listeners.get(event, []):
            listener(*args)
        logging.debug(f"Event {event} delivered to {len(self._listeners.get(event, []))} listener(s).")
