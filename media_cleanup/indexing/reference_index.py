import json
import logging
from typing import List, Dict, Any, Iterable

from .. import config
from ..database.ops import DBOperations
from ..hooks import ExtensionRegistry
from ..library import MediaLibrary
from ..models import ContentItem, ReferenceRecord
from ..settings import SettingsService
from .extract import extract_content_ids, extract_meta_ids


class ReferenceIndex:
    """
    Reverse lookup of where attachments are used: content bodies, featured
    images, page-builder meta, widgets, site icon and logo, plus any custom
    sources registered by collaborators.
    """
    def __init__(self,
                 db_ops: DBOperations,
                 library: MediaLibrary,
                 settings: SettingsService,
                 hooks: ExtensionRegistry):
        self.db = db_ops
        self.library = library
        self.settings = settings
        self.hooks = hooks

    def clear(self):
        """Empties the index. Must run before a rebuild starts."""
        self.db.conn.execute("DELETE FROM media_references")
        logging.info("Reference index cleared.")

    def add_references_batch(self, records: Iterable[ReferenceRecord]) -> int:
        rows = [(r.attachment_id, r.source_type, r.source_id) for r in records if r.attachment_id > 0]
        # OR IGNORE: a retried batch re-inserts the same triples
        for start in range(0, len(rows), config.INSERT_CHUNK_SIZE):
            self.db.conn.executemany(
                "INSERT OR IGNORE INTO media_references (attachment_id, source_type, source_id) VALUES (?, ?, ?)",
                rows[start:start + config.INSERT_CHUNK_SIZE],
            )
        return len(rows)

    def get_total_items(self) -> int:
        return self.db.count_indexable_content()

    def build_global_references(self) -> int:
        """Site icon, custom logo and active widget instances."""
        records: List[ReferenceRecord] = []

        site_icon = self.db.get_option_id('site_icon')
        if site_icon:
            records.append(ReferenceRecord(site_icon, 'site_icon', 0))

        custom_logo = self.db.get_option_id('custom_logo')
        if custom_logo:
            records.append(ReferenceRecord(custom_logo, 'custom_logo', 0))

        widgets = self.db.get_option('widgets', {}) or {}
        if isinstance(widgets, dict):
            for area, instances in widgets.items():
                if area == config.INACTIVE_WIDGET_AREA or not instances:
                    continue
                for attachment_id in extract_meta_ids(json.dumps(instances, ensure_ascii=False), self.library):
                    records.append(ReferenceRecord(attachment_id, 'widget', 0))

        count = self.add_references_batch(records)
        logging.info(f"Indexed {count} global reference(s).")
        return count

    def build_index_batch(self, offset: int, batch_size: int) -> int:
        """
        Indexes up to batch_size content items starting at offset.
        Returns the number of items processed; 0 means nothing left.
        """
        items = self.db.fetch_content_batch(offset, batch_size)
        if not items:
            return 0

        depth = self.settings.content_scan_depth()
        meta_keys = self.settings.meta_keys() if depth != 'none' else []

        records: List[ReferenceRecord] = []
        for item in items:
            if depth == 'full':
                for attachment_id in extract_content_ids(item.body, self.library):
                    records.append(ReferenceRecord(attachment_id, 'content', item.id))

            if depth != 'none' and item.featured_image_id:
                records.append(ReferenceRecord(int(item.featured_image_id), 'featured_image', item.id))

            for meta_key in meta_keys:
                meta_value = self.db.get_content_meta(item.id, meta_key)
                if not meta_value:
                    continue
                for attachment_id in extract_meta_ids(meta_value, self.library):
                    records.append(ReferenceRecord(attachment_id, 'page_builder', item.id))

        records.extend(self._custom_source_records(items))
        self.add_references_batch(records)

        logging.debug(f"Indexed {len(items)} content item(s) at offset {offset} ({len(records)} reference(s)).")
        return len(items)

    def _custom_source_records(self, items: List[ContentItem]) -> List[ReferenceRecord]:
        records = []
        for source in self.hooks.reference_sources:
            for item in items:
                attachment_ids = source.callback(item.id)
                if not attachment_ids:
                    continue
                for attachment_id in attachment_ids:
                    records.append(ReferenceRecord(int(attachment_id), source.source_type, item.id))
        return records

    def is_referenced(self, attachment_id: int) -> bool:
        cur = self.db.conn.execute(
            "SELECT 1 FROM media_references WHERE attachment_id = ? LIMIT 1", (attachment_id,)
        )
        return cur.fetchone() is not None

    def get_references(self, attachment_id: int) -> List[Dict[str, Any]]:
        cur = self.db.conn.execute("""
            SELECT source_type, source_id FROM media_references
            WHERE attachment_id = ?
            ORDER BY source_type, source_id
        """, (attachment_id,))
        return [{'source_type': r[0], 'source_id': r[1]} for r in cur.fetchall()]
