import os
import glob
import re
import logging
import mimetypes
from datetime import datetime, UTC
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional, Set, Tuple

from PIL import Image
from tqdm import tqdm

from . import config
from .database.ops import DBOperations
from .models import Attachment

# Size variants generated from an original, e.g. photo-300x200.jpg
SIZE_SUFFIX_RE = re.compile(r'-\d+x\d+(?=\.\w+$)')


def strip_size_suffix(path: str) -> str:
    return SIZE_SUFFIX_RE.sub('', path)


class MediaLibrary:
    """
    File-side view of the content store: where attachment payloads live on
    disk, and how upload URLs map back to attachment ids.
    """
    def __init__(self, db_ops: DBOperations, upload_dir: Path):
        self.db = db_ops
        self.upload_dir = Path(upload_dir)

    # --- File queries ---

    def file_path(self, attachment: Attachment) -> Path:
        return self.upload_dir / attachment.file_path

    def file_size(self, attachment: Attachment) -> Optional[int]:
        """Size in bytes, or None when the payload is missing."""
        try:
            return self.file_path(attachment).stat().st_size
        except OSError:
            return None

    def delete_files(self, attachment: Attachment) -> int:
        """Removes the payload and its generated size variants. Returns files removed."""
        path = self.file_path(attachment)
        removed = 0
        candidates = [path]
        if path.parent.is_dir():
            rel_dir = PurePosixPath(attachment.file_path).parent
            for variant in path.parent.glob(f"{glob.escape(path.stem)}-*{path.suffix}"):
                if strip_size_suffix(variant.name) != path.name:
                    continue
                # A file named like a variant may be an attachment of its own
                owner = self.db.find_attachment_by_path((rel_dir / variant.name).as_posix())
                if owner is not None and owner != attachment.id:
                    continue
                candidates.append(variant)

        for candidate in candidates:
            try:
                candidate.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        return removed

    # --- URL resolution ---

    def resolve_upload_url(self, url: str) -> Optional[int]:
        """
        Maps an upload URL (or bare uploads path) to an attachment id.
        Size variants resolve to their original.
        """
        marker = url.find(config.UPLOADS_MARKER)
        if marker == -1:
            return None
        rel_path = url[marker + len(config.UPLOADS_MARKER):]
        rel_path = rel_path.split('?', 1)[0].split('#', 1)[0]
        rel_path = rel_path.strip('/')
        if not rel_path:
            return None
        # An original may itself be named like a size variant
        attachment_id = self.db.find_attachment_by_path(rel_path)
        if attachment_id is None:
            attachment_id = self.db.find_attachment_by_path(strip_size_suffix(rel_path))
        return attachment_id

    # --- Registration ---

    def register_file(self, path: Path, title: Optional[str] = None,
                      created_at: Optional[str] = None) -> int:
        """
        Records a file inside the upload directory as an attachment.
        Does not commit.
        """
        path = Path(path).resolve()
        try:
            rel_path = path.relative_to(self.upload_dir.resolve()).as_posix()
        except ValueError:
            raise ValueError(f"{path} is not inside the upload directory {self.upload_dir}")

        mime_type = mimetypes.guess_type(path.name)[0] or 'application/octet-stream'
        width, height = self._probe_dimensions(path, mime_type)

        if created_at is None:
            created_at = datetime.fromtimestamp(path.stat().st_mtime, UTC).isoformat(timespec='seconds')

        return self.db.add_attachment(
            title=title or path.stem,
            file_path=rel_path,
            mime_type=mime_type,
            created_at=created_at,
            width=width,
            height=height,
        )

    def import_directory(self, root: Optional[Path] = None,
                         skip_dirs: Optional[Set[Path]] = None) -> int:
        """
        Registers every file under root (default: the upload directory) that
        is not already an attachment. Size variants are skipped.
        """
        root = Path(root) if root else self.upload_dir
        skip_dirs = skip_dirs or set()

        candidates = []
        for path in self._iter_files(root, skip_dirs):
            if SIZE_SUFFIX_RE.search(path.name):
                continue
            rel_path = path.resolve().relative_to(self.upload_dir.resolve()).as_posix()
            if self.db.find_attachment_by_path(rel_path) is None:
                candidates.append(path)

        imported = 0
        for path in tqdm(candidates, desc="Importing", disable=not candidates):
            try:
                self.register_file(path)
                imported += 1
            except OSError as e:
                logging.error(f"Failed to import {path}: {e}")

        self.db.conn.commit()
        logging.info(f"Imported {imported} new attachment(s) from {root}.")
        return imported

    def _probe_dimensions(self, path: Path, mime_type: str) -> Tuple[Optional[int], Optional[int]]:
        if not mime_type.startswith('image/'):
            return None, None
        try:
            with Image.open(path) as img:
                width, height = img.size
            return width, height
        except OSError as e:
            logging.debug(f"Could not read dimensions of {path}: {e}")
            return None, None

    def _iter_files(self, root: Path, skip_dirs: Set[Path]) -> Iterator[Path]:
        """Depth-first walker using os.scandir for speed."""
        stack = [root]
        while stack:
            current = stack.pop()
            if skip_dirs and any(sd == current or sd in current.parents for sd in skip_dirs):
                continue

            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError:
                logging.warning(f"Permission denied: {current}")
                continue

            # Sort for stable traversal order
            entries.sort(key=lambda e: e.name.lower())

            dirs = []
            files = []
            for e in entries:
                if e.is_dir(follow_symlinks=False):
                    dirs.append(Path(e.path))
                elif e.is_file(follow_symlinks=False) and not e.name.startswith('.'):
                    files.append(Path(e.path))

            # Push dirs to stack (reversed so we process A before Z)
            for d in reversed(dirs):
                stack.append(d)

            for f in files:
                yield f
