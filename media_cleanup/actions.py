"""
Bulk actions on attachments.

Each action walks the ids in chunks, commits per chunk, and reports how
many ids succeeded and failed. Actions are idempotent: repeating one on
the same ids leaves the same state.
"""
import logging
from typing import Iterable, List, Dict, Any

from . import config
from .database.ops import DBOperations
from .exceptions import ActionNotConfirmedError, AttachmentNotFoundError
from .hooks import ExtensionRegistry
from .library import MediaLibrary
from .scanning.results import ResultsStore
from .settings import SettingsService


def _clean_ids(ids: Iterable[Any]) -> List[int]:
    cleaned = []
    for value in ids:
        attachment_id = abs(int(value))
        if attachment_id > 0:
            cleaned.append(attachment_id)
    return list(dict.fromkeys(cleaned))


def _chunks(ids: List[int], size: int = config.ACTION_CHUNK_SIZE):
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


class MediaActions:
    def __init__(self,
                 db_ops: DBOperations,
                 library: MediaLibrary,
                 settings: SettingsService,
                 hooks: ExtensionRegistry):
        self.db = db_ops
        self.library = library
        self.settings = settings
        self.hooks = hooks
        self.results = ResultsStore(db_ops.conn)

    def _require_confirm(self, action: str, confirm: bool):
        if not confirm:
            raise ActionNotConfirmedError(f"The {action} action requires confirmation.")

    def archive(self, ids: Iterable[Any], confirm: bool = False) -> Dict[str, Any]:
        """Files attachments into the archive folder."""
        self._require_confirm('archive', confirm)
        ids = _clean_ids(ids)
        folder = self.settings.archive_folder_name()
        self.hooks.emit('before_bulk_action', 'archive', ids)

        success = failed = 0
        for chunk in _chunks(ids):
            attachments = self.db.get_attachments(chunk)
            archived = []
            for attachment_id in chunk:
                if attachment_id not in attachments:
                    failed += 1
                    continue
                self.db.set_attachment_folder(attachment_id, folder)
                archived.append(attachment_id)
            self.db.conn.commit()

            success += len(archived)
            for attachment_id in archived:
                self.hooks.emit('media_archived', attachment_id, folder)

        logging.info(f"Archived {success} attachment(s) into '{folder}' ({failed} failed).")
        return {'action': 'archive', 'success': success, 'failed': failed, 'folder': folder}

    def trash(self, ids: Iterable[Any], confirm: bool = False) -> Dict[str, Any]:
        """Moves attachments to the trash, remembering their prior status."""
        self._require_confirm('trash', confirm)
        ids = _clean_ids(ids)
        self.hooks.emit('before_bulk_action', 'trash', ids)

        success = failed = 0
        for chunk in _chunks(ids):
            attachments = self.db.get_attachments(chunk)
            trashed = []
            for attachment_id in chunk:
                attachment = attachments.get(attachment_id)
                if attachment is None:
                    failed += 1
                    continue
                # Already in the trash: keep the original previous status
                if not attachment.is_trashed:
                    self.db.save_trash_record(attachment_id, attachment.status)
                    self.db.set_attachment_status(attachment_id, config.ATTACHMENT_TRASHED)
                trashed.append(attachment_id)
            self.db.conn.commit()

            success += len(trashed)
            for attachment_id in trashed:
                self.hooks.emit('media_trashed', attachment_id)

        logging.info(f"Trashed {success} attachment(s) ({failed} failed).")
        return {'action': 'trash', 'success': success, 'failed': failed}

    def restore(self, ids: Iterable[Any]) -> Dict[str, Any]:
        ids = _clean_ids(ids)

        success = failed = 0
        for chunk in _chunks(ids):
            attachments = self.db.get_attachments(chunk)
            restored = []
            for attachment_id in chunk:
                attachment = attachments.get(attachment_id)
                if attachment is None or not attachment.is_trashed:
                    failed += 1
                    continue
                previous = self.db.get_trash_previous_status(attachment_id) or config.ATTACHMENT_ACTIVE
                self.db.set_attachment_status(attachment_id, previous)
                self.db.delete_trash_record(attachment_id)
                restored.append(attachment_id)
            self.db.conn.commit()

            success += len(restored)
            for attachment_id in restored:
                self.hooks.emit('media_restored', attachment_id)

        logging.info(f"Restored {success} attachment(s) ({failed} failed).")
        return {'action': 'restore', 'success': success, 'failed': failed}

    def delete(self, ids: Iterable[Any], confirm: bool = False) -> Dict[str, Any]:
        """Permanently removes attachments and their files."""
        self._require_confirm('delete', confirm)
        ids = _clean_ids(ids)
        self.hooks.emit('before_bulk_action', 'delete', ids)

        success = failed = 0
        for chunk in _chunks(ids):
            attachments = self.db.get_attachments(chunk)
            deleted = []
            for attachment_id in chunk:
                attachment = attachments.get(attachment_id)
                if attachment is None:
                    failed += 1
                    continue
                try:
                    self.library.delete_files(attachment)
                except OSError as e:
                    logging.error(f"Failed to delete files of attachment {attachment_id}: {e}")
                    failed += 1
                    continue
                self.db.delete_attachment(attachment_id)
                self.results.remove(attachment_id)
                deleted.append(attachment_id)
            self.db.conn.commit()

            success += len(deleted)
            for attachment_id in deleted:
                self.hooks.emit('media_deleted', attachment_id)

        logging.info(f"Deleted {success} attachment(s) ({failed} failed).")
        return {'action': 'delete', 'success': success, 'failed': failed}

    def flag(self, ids: Iterable[Any]) -> Dict[str, Any]:
        """Marks attachments for manual review."""
        ids = _clean_ids(ids)

        success = failed = 0
        for chunk in _chunks(ids):
            existing = self.db.existing_attachment_ids(chunk)
            flagged = []
            for attachment_id in chunk:
                if attachment_id not in existing:
                    failed += 1
                    continue
                self.db.set_flag(attachment_id)
                flagged.append(attachment_id)
            self.db.conn.commit()

            success += len(flagged)
            for attachment_id in flagged:
                self.hooks.emit('media_flagged', attachment_id)

        return {'action': 'flag', 'success': success, 'failed': failed}

    def unflag(self, ids: Iterable[Any]) -> Dict[str, Any]:
        ids = _clean_ids(ids)
        for chunk in _chunks(ids):
            for attachment_id in chunk:
                self.db.clear_flag(attachment_id)
            self.db.conn.commit()
        return {'action': 'unflag', 'success': len(ids), 'failed': 0}

    def set_primary(self, primary_id: int, group_ids: Iterable[Any]) -> Dict[str, Any]:
        """
        Makes primary_id the kept copy of its duplicate group. Stored
        duplicate findings for the group are updated so exactly one member
        stays primary.
        """
        primary_id = abs(int(primary_id))
        if self.db.get_attachment(primary_id) is None:
            raise AttachmentNotFoundError(f"Attachment {primary_id} not found.")

        group = _clean_ids(group_ids)
        if primary_id not in group:
            group.append(primary_id)

        self.db.clear_primary(group)
        self.db.mark_primary(primary_id)

        findings = self.results.get('duplicate')
        updated = []
        for attachment_id in group:
            finding = findings.get(attachment_id)
            if finding is not None:
                finding.is_primary = attachment_id == primary_id
                updated.append(finding)
        self.results.merge('duplicate', updated)
        self.db.conn.commit()

        logging.info(f"Attachment {primary_id} is now primary of a {len(group)}-member group.")
        return {'action': 'set-primary', 'primary_id': primary_id, 'group_ids': group}
