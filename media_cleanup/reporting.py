import csv
import math
import logging
from typing import Dict, List, Any

from . import config
from .database.ops import DBOperations
from .exceptions import InvalidQueryError, AttachmentNotFoundError
from .indexing.reference_index import ReferenceIndex
from .library import MediaLibrary
from .models import Attachment
from .scanning.detectors import DuplicateDetector
from .scanning.results import ResultsStore

CSV_HEADERS = [
    "Attachment ID",
    "Type",
    "Title",
    "Filename",
    "MIME Type",
    "File Size",
    "Upload Date",
    "Flagged",
    "Notes",
]


def _page_bounds(page: int, per_page: int, max_per_page: int):
    try:
        page, per_page = int(page), int(per_page)
    except (TypeError, ValueError):
        raise InvalidQueryError("page and per_page must be integers")
    if page < 1:
        raise InvalidQueryError(f"page must be at least 1, got {page}")
    if not 1 <= per_page <= max_per_page:
        raise InvalidQueryError(f"per_page must be between 1 and {max_per_page}, got {per_page}")
    return page, per_page


def _paginate(items: List[Any], page: int, per_page: int) -> Dict[str, Any]:
    total = len(items)
    start = (page - 1) * per_page
    return {
        'items': items[start:start + per_page],
        'total': total,
        'page': page,
        'per_page': per_page,
        'total_pages': math.ceil(total / per_page),
    }


class ResultsQuery:
    """
    Read side for scan findings, flagged items and the cleanup trash.
    Findings whose attachment has since been deleted are dropped here.
    """
    def __init__(self,
                 db_ops: DBOperations,
                 library: MediaLibrary,
                 reference_index: ReferenceIndex,
                 duplicate_detector: DuplicateDetector):
        self.db = db_ops
        self.library = library
        self.reference_index = reference_index
        self.duplicate_detector = duplicate_detector
        self.results = ResultsStore(db_ops.conn)

    def get_results(self,
                    result_type: str = 'unused',
                    page: int = 1,
                    per_page: int = config.RESULTS_PER_PAGE,
                    orderby: str = 'file_size',
                    order: str = 'desc') -> Dict[str, Any]:
        page, per_page = _page_bounds(page, per_page, config.RESULTS_MAX_PER_PAGE)
        items = self.list_items(result_type, orderby, order)
        return _paginate(items, page, per_page)

    def list_items(self, result_type: str, orderby: str = 'file_size', order: str = 'desc') -> List[Dict[str, Any]]:
        """Every live item of a result type, sorted and enriched."""
        if result_type not in config.RESULT_TYPES:
            raise InvalidQueryError(f"Unknown result type '{result_type}'. Must be one of: {', '.join(config.RESULT_TYPES)}")
        if orderby not in config.RESULT_ORDERBY:
            raise InvalidQueryError(f"Cannot order by '{orderby}'. Must be one of: {', '.join(config.RESULT_ORDERBY)}")
        if order not in ('asc', 'desc'):
            raise InvalidQueryError(f"order must be 'asc' or 'desc', got '{order}'")

        if result_type == 'flagged':
            items = self._flagged_items()
        elif result_type == 'trash':
            items = self._trash_items()
        else:
            items = self._finding_items(result_type)

        default = 0 if orderby == 'file_size' else ''
        items.sort(key=lambda i: i.get(orderby, default), reverse=(order == 'desc'))
        return items

    def get_duplicate_groups(self, page: int = 1, per_page: int = config.GROUPS_PER_PAGE) -> Dict[str, Any]:
        page, per_page = _page_bounds(page, per_page, config.GROUPS_MAX_PER_PAGE)

        findings = self.results.get('duplicate')
        attachments = self.db.get_attachments(findings)

        groups = []
        for group in self.duplicate_detector.get_groups(findings.values()):
            members = []
            for member in group.members:
                attachment = attachments.get(member['attachment_id'])
                if attachment is None:
                    continue
                member['reference_count'] = len(self.reference_index.get_references(attachment.id))
                member['is_trashed'] = attachment.is_trashed
                members.append(member)
            # A group with one survivor is no longer a duplicate
            if len(members) < 2:
                continue
            group.members = members
            group.count = len(members)
            groups.append(group.to_dict())

        paged = _paginate(groups, page, per_page)
        paged['groups'] = paged.pop('items')
        return paged

    def get_result_detail(self, attachment_id: int) -> Dict[str, Any]:
        attachment = self.db.get_attachment(attachment_id)
        if attachment is None:
            raise AttachmentNotFoundError(f"Attachment {attachment_id} not found.")

        references = self.reference_index.get_references(attachment_id)
        for ref in references:
            if ref['source_id'] > 0:
                source = self.db.get_content_item(ref['source_id'])
                ref['source_title'] = source.title if source else ''

        found_in = self.results.types_for(attachment_id)
        status = [t for t in config.SCAN_TYPES if t in found_in]
        flagged_at = self.db.get_flagged_at(attachment_id)
        if flagged_at:
            status.append('flagged')

        detail = self._attachment_item(attachment)
        detail.update({
            'status': status,
            'references': references,
            'folder': attachment.folder,
            'is_flagged': flagged_at is not None,
            'is_trashed': attachment.is_trashed,
        })
        return detail

    def export_csv(self, result_type: str, output_csv: str,
                   orderby: str = 'file_size', order: str = 'desc') -> int:
        """Writes every item of a result type to CSV. Returns the row count."""
        items = self.list_items(result_type, orderby, order)
        logging.info(f"Exporting {len(items)} {result_type} item(s) -> {output_csv}")

        with open(output_csv, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(CSV_HEADERS)
            for item in items:
                writer.writerow([
                    item['attachment_id'],
                    result_type,
                    item.get('title', ''),
                    item.get('filename', ''),
                    item.get('mime_type', ''),
                    item.get('file_size', 0),
                    item.get('upload_date', ''),
                    'yes' if item.get('is_flagged') else '',
                    self._notes(item),
                ])
        return len(items)

    # --- Helpers ---

    def _attachment_item(self, attachment: Attachment) -> Dict[str, Any]:
        return {
            'attachment_id': attachment.id,
            'title': attachment.title,
            'filename': attachment.filename,
            'mime_type': attachment.mime_type,
            'file_size': self.library.file_size(attachment) or 0,
            'upload_date': attachment.created_at,
            'width': attachment.width or 0,
            'height': attachment.height or 0,
        }

    def _finding_items(self, result_type: str) -> List[Dict[str, Any]]:
        findings = self.results.get(result_type)
        attachments = self.db.get_attachments(findings)

        items = []
        for attachment_id, finding in findings.items():
            attachment = attachments.get(attachment_id)
            if attachment is None:
                continue
            item = finding.to_dict()
            item['is_flagged'] = self.db.get_flagged_at(attachment_id) is not None
            item['is_trashed'] = attachment.is_trashed
            items.append(item)
        return items

    def _flagged_items(self) -> List[Dict[str, Any]]:
        ids = self.db.fetch_flagged_ids()
        attachments = self.db.get_attachments(ids)
        items = []
        for attachment_id in ids:
            attachment = attachments.get(attachment_id)
            if attachment is None:
                continue
            item = self._attachment_item(attachment)
            item.update({
                'type': 'flagged',
                'flagged_at': self.db.get_flagged_at(attachment_id),
                'is_flagged': True,
                'is_trashed': attachment.is_trashed,
            })
            items.append(item)
        return items

    def _trash_items(self) -> List[Dict[str, Any]]:
        records = self.db.fetch_trashed_by_cleanup(0, self.db.count_trashed_by_cleanup())
        attachments = self.db.get_attachments(r['attachment_id'] for r in records)
        items = []
        for record in records:
            attachment = attachments.get(record['attachment_id'])
            if attachment is None:
                continue
            item = self._attachment_item(attachment)
            item.update({
                'type': 'trash',
                'trashed_at': record['trashed_at'],
                'is_flagged': self.db.get_flagged_at(attachment.id) is not None,
                'is_trashed': True,
            })
            items.append(item)
        return items

    def _notes(self, item: Dict[str, Any]) -> str:
        if item.get('type') == 'duplicate':
            role = "primary" if item.get('is_primary') else "copy"
            return f"{role} of group {item.get('hash', '')[:12]} ({item.get('group_count', 0)} files)"
        if item.get('type') == 'oversized':
            return f"over threshold by {item.get('over_by', 0)} bytes"
        if item.get('trashed_at'):
            return f"trashed {item['trashed_at']}"
        return ""
