import hashlib
import logging
from pathlib import Path
from typing import Iterable, Optional

from .. import config
from ..database.ops import DBOperations
from ..library import MediaLibrary
from ..settings import SettingsService


class HashService:
    """
    Content digests for duplicate detection, cached per attachment.

    A cached digest is only trusted while its algorithm matches the
    configured one; switching algorithms invalidates the whole cache lazily.
    """
    def __init__(self, db_ops: DBOperations, library: MediaLibrary, settings: SettingsService):
        self.db = db_ops
        self.library = library
        self.settings = settings

    @property
    def algorithm(self) -> str:
        return self.settings.hash_algorithm()

    def get_hash(self, attachment_id: int, force: bool = False) -> str:
        algorithm = self.algorithm
        if not force:
            record = self.db.get_hash_record(attachment_id)
            if record and record.digest and record.algorithm == algorithm:
                return record.digest

        digest = self.compute_hash(attachment_id, algorithm)
        if digest:
            self.db.save_hash(attachment_id, digest, algorithm)
        return digest

    def compute_hash(self, attachment_id: int, algorithm: Optional[str] = None) -> str:
        """
        Streams the attachment file through the digest.
        Returns '' when the attachment or its file is missing or unreadable.
        """
        attachment = self.db.get_attachment(attachment_id)
        if attachment is None:
            return ''

        path = self.library.file_path(attachment)
        try:
            return self._file_digest(path, algorithm or self.algorithm)
        except OSError as e:
            logging.warning(f"Cannot hash attachment {attachment_id} ({path}): {e}")
            return ''

    def hash_batch(self, attachment_ids: Iterable[int], force: bool = False) -> int:
        """Hashes each id; returns how many produced a digest."""
        hashed = 0
        for attachment_id in attachment_ids:
            if self.get_hash(attachment_id, force):
                hashed += 1
        return hashed

    def clear_hash(self, attachment_id: int):
        self.db.delete_hash(attachment_id)

    def clear_all(self):
        self.db.delete_all_hashes()
        logging.info("Hash cache cleared.")

    def _file_digest(self, path: Path, algorithm: str) -> str:
        h = hashlib.new(algorithm)
        with open(path, 'rb') as f:
            while chunk := f.read(config.HASH_CHUNK_SIZE):
                h.update(chunk)
        return h.hexdigest()
