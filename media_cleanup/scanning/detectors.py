import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Dict, Iterable, List, Any

from ..database.ops import DBOperations
from ..hooks import ExtensionRegistry
from ..indexing.reference_index import ReferenceIndex
from ..library import MediaLibrary
from ..models import Attachment, Finding, DuplicateGroup
from ..settings import SettingsService
from .hasher import HashService


class Detector(ABC):
    """
    Base class for issue detectors.
    detect() maps each offending attachment id to its Finding.
    """
    type: str = ''
    label: str = ''

    def __init__(self, db_ops: DBOperations, library: MediaLibrary):
        self.db = db_ops
        self.library = library

    @abstractmethod
    def detect(self, attachment_ids: Iterable[int]) -> Dict[int, Finding]:
        pass

    def _finding(self, attachment: Attachment, **extra) -> Finding:
        return Finding(
            type=self.type,
            attachment_id=attachment.id,
            title=attachment.title,
            filename=attachment.filename,
            mime_type=attachment.mime_type,
            file_size=self.library.file_size(attachment) or 0,
            upload_date=attachment.created_at,
            width=attachment.width or 0,
            height=attachment.height or 0,
            **extra,
        )


class UnusedDetector(Detector):
    type = 'unused'
    label = 'Unused'

    def __init__(self,
                 db_ops: DBOperations,
                 library: MediaLibrary,
                 reference_index: ReferenceIndex,
                 settings: SettingsService,
                 hooks: ExtensionRegistry):
        super().__init__(db_ops, library)
        self.reference_index = reference_index
        self.settings = settings
        self.hooks = hooks

    def protected_ids(self) -> set:
        """Site icon, custom logo, operator-protected ids and registered sources."""
        protected = set(self.settings.protected_ids())
        for option in ('site_icon', 'custom_logo'):
            attachment_id = self.db.get_option_id(option)
            if attachment_id > 0:
                protected.add(attachment_id)
        protected |= self.hooks.protected_ids()
        return protected

    def detect(self, attachment_ids: Iterable[int]) -> Dict[int, Finding]:
        ids = list(attachment_ids)
        protected = self.protected_ids()
        attachments = self.db.get_attachments(ids)

        results: Dict[int, Finding] = {}
        for attachment_id in ids:
            if attachment_id in protected:
                continue
            if self.reference_index.is_referenced(attachment_id):
                continue
            if not self.hooks.is_unused(attachment_id):
                continue

            attachment = attachments.get(attachment_id)
            if attachment is None:
                continue

            results[attachment_id] = self._finding(attachment)
        return results


class DuplicateDetector(Detector):
    type = 'duplicate'
    label = 'Duplicate'

    def __init__(self, db_ops: DBOperations, library: MediaLibrary, hash_service: HashService):
        super().__init__(db_ops, library)
        self.hash_service = hash_service

    def detect(self, attachment_ids: Iterable[int]) -> Dict[int, Finding]:
        ids = list(attachment_ids)
        attachments = self.db.get_attachments(ids)

        # Group the batch by digest
        hash_map: Dict[str, List[int]] = OrderedDict()
        for attachment_id in ids:
            attachment = attachments.get(attachment_id)
            if attachment is None or attachment.is_trashed:
                continue
            digest = self.hash_service.get_hash(attachment_id)
            if not digest:
                continue
            hash_map.setdefault(digest, []).append(attachment_id)

        algorithm = self.hash_service.algorithm
        results: Dict[int, Finding] = {}

        for digest, batch_ids in hash_map.items():
            # Siblings hashed in earlier batches complete the group
            group_ids = sorted(set(batch_ids) | set(self.db.find_ids_by_digest(digest, algorithm)))
            if len(group_ids) < 2:
                continue

            members = self.db.get_attachments(group_ids)
            group_ids = [i for i in group_ids if i in members and not members[i].is_trashed]
            if len(group_ids) < 2:
                continue

            primary_id = self._determine_primary(group_ids, members)
            for attachment_id in group_ids:
                results[attachment_id] = self._finding(
                    members[attachment_id],
                    hash=digest,
                    is_primary=attachment_id == primary_id,
                    group_ids=list(group_ids),
                    group_count=len(group_ids),
                )

        if results:
            logging.debug(f"Duplicate detector matched {len(results)} attachment(s) in {len(hash_map)} digest(s).")
        return results

    def _determine_primary(self, group_ids: List[int], members: Dict[int, Attachment]) -> int:
        for attachment_id in group_ids:
            if self.db.is_marked_primary(attachment_id):
                return attachment_id

        # Oldest upload wins; strict comparison keeps the first on ties
        oldest_id = group_ids[0]
        oldest_date = members[oldest_id].created_at
        for attachment_id in group_ids[1:]:
            created_at = members[attachment_id].created_at
            if created_at < oldest_date:
                oldest_id, oldest_date = attachment_id, created_at
        return oldest_id

    def get_groups(self, findings: Iterable[Any]) -> List[DuplicateGroup]:
        """Rebuilds groups from duplicate findings, in first-seen order."""
        groups: Dict[str, DuplicateGroup] = OrderedDict()
        for finding in findings:
            data = finding.to_dict() if isinstance(finding, Finding) else dict(finding)
            digest = data.get('hash')
            if not digest:
                continue
            if digest not in groups:
                groups[digest] = DuplicateGroup(hash=digest, count=data.get('group_count', 0))
            groups[digest].members.append(data)
        return list(groups.values())


class OversizedDetector(Detector):
    type = 'oversized'
    label = 'Oversized'

    def __init__(self, db_ops: DBOperations, library: MediaLibrary, settings: SettingsService):
        super().__init__(db_ops, library)
        self.settings = settings

    @staticmethod
    def threshold_for_mime(mime_type: str, thresholds: Dict[str, int]) -> int:
        category = (mime_type or '').split('/', 1)[0]
        if category in ('image', 'video', 'audio'):
            return thresholds[category]
        return thresholds['document']

    def detect(self, attachment_ids: Iterable[int]) -> Dict[int, Finding]:
        ids = list(attachment_ids)
        thresholds = self.settings.thresholds()
        attachments = self.db.get_attachments(ids)

        results: Dict[int, Finding] = {}
        for attachment_id in ids:
            attachment = attachments.get(attachment_id)
            if attachment is None:
                continue

            file_size = self.library.file_size(attachment)
            if file_size is None:
                continue

            threshold = self.threshold_for_mime(attachment.mime_type, thresholds)
            if file_size <= threshold:
                continue

            results[attachment_id] = self._finding(attachment, threshold=threshold, over_by=file_size - threshold)
        return results
