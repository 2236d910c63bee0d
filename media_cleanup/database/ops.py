import json
import sqlite3
import logging
from datetime import datetime, UTC
from typing import Optional, List, Dict, Any, Set, Iterable

from .. import config
from ..models import Attachment, ContentItem, HashRecord

_ATTACHMENT_COLUMNS = "id, title, file_path, mime_type, status, created_at, width, height, folder"


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec='seconds')


class DBOperations:
    """
    Content store access plus the typed annotation side-tables
    (hashes, flags, primary markers, trash records).

    Nothing here commits; the caller owns the transaction so a scan batch
    and its progress update land together.
    """
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # --- Attachments ---

    def add_attachment(self,
                       title: str,
                       file_path: str,
                       mime_type: str,
                       created_at: Optional[str] = None,
                       width: Optional[int] = None,
                       height: Optional[int] = None,
                       status: str = config.ATTACHMENT_ACTIVE) -> int:
        cur = self.conn.cursor()
        cur.execute("""
            INSERT INTO attachments (title, file_path, mime_type, status, created_at, width, height)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (title, file_path, mime_type, status, created_at or utc_now(), width, height))

        if cur.lastrowid is None:
            raise RuntimeError("Database INSERT failed to return a row ID.")
        return cur.lastrowid

    def get_attachment(self, attachment_id: int) -> Optional[Attachment]:
        cur = self.conn.cursor()
        cur.execute(f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE id = ?", (attachment_id,))
        row = cur.fetchone()
        return Attachment(*row) if row else None

    def get_attachments(self, attachment_ids: Iterable[int]) -> Dict[int, Attachment]:
        """Bulk lookup; unknown ids are simply absent from the result."""
        ids = list(dict.fromkeys(attachment_ids))
        found: Dict[int, Attachment] = {}
        for start in range(0, len(ids), config.INSERT_CHUNK_SIZE):
            chunk = ids[start:start + config.INSERT_CHUNK_SIZE]
            placeholders = ", ".join("?" * len(chunk))
            cur = self.conn.execute(
                f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE id IN ({placeholders})", chunk
            )
            for row in cur.fetchall():
                found[row[0]] = Attachment(*row)
        return found

    def existing_attachment_ids(self, attachment_ids: Iterable[int]) -> Set[int]:
        return set(self.get_attachments(attachment_ids))

    def count_attachments(self, status: str = config.ATTACHMENT_ACTIVE) -> int:
        cur = self.conn.execute("SELECT COUNT(*) FROM attachments WHERE status = ?", (status,))
        return int(cur.fetchone()[0])

    def fetch_attachment_ids(self, offset: int, limit: int,
                             status: str = config.ATTACHMENT_ACTIVE) -> List[int]:
        """Stable page of attachment ids, ordered by id ascending."""
        cur = self.conn.execute(
            "SELECT id FROM attachments WHERE status = ? ORDER BY id ASC LIMIT ? OFFSET ?",
            (status, limit, offset),
        )
        return [row[0] for row in cur.fetchall()]

    def find_attachment_by_path(self, rel_path: str) -> Optional[int]:
        cur = self.conn.execute(
            "SELECT id FROM attachments WHERE file_path = ? ORDER BY id ASC LIMIT 1", (rel_path,)
        )
        row = cur.fetchone()
        return row[0] if row else None

    def set_attachment_status(self, attachment_id: int, status: str):
        self.conn.execute("UPDATE attachments SET status = ? WHERE id = ?", (status, attachment_id))

    def set_attachment_folder(self, attachment_id: int, folder: Optional[str]):
        self.conn.execute("UPDATE attachments SET folder = ? WHERE id = ?", (folder, attachment_id))

    def delete_attachment(self, attachment_id: int) -> bool:
        cur = self.conn.execute("DELETE FROM attachments WHERE id = ?", (attachment_id,))
        return cur.rowcount > 0

    # --- Content Items ---

    def add_content_item(self,
                         title: str = '',
                         body: str = '',
                         content_type: str = 'post',
                         status: str = 'publish',
                         featured_image_id: Optional[int] = None) -> int:
        cur = self.conn.cursor()
        cur.execute("""
            INSERT INTO content_items (content_type, status, title, body, featured_image_id)
            VALUES (?, ?, ?, ?, ?)
        """, (content_type, status, title, body, featured_image_id))

        if cur.lastrowid is None:
            raise RuntimeError("Database INSERT failed to return a row ID.")
        return cur.lastrowid

    def get_content_item(self, content_id: int) -> Optional[ContentItem]:
        cur = self.conn.execute(
            "SELECT id, content_type, status, title, body, featured_image_id FROM content_items WHERE id = ?",
            (content_id,),
        )
        row = cur.fetchone()
        return ContentItem(*row) if row else None

    def count_indexable_content(self) -> int:
        placeholders = ", ".join("?" * len(config.INDEXABLE_STATUSES))
        cur = self.conn.execute(
            f"SELECT COUNT(*) FROM content_items WHERE status IN ({placeholders})",
            config.INDEXABLE_STATUSES,
        )
        return int(cur.fetchone()[0])

    def fetch_content_batch(self, offset: int, limit: int) -> List[ContentItem]:
        """Indexable content items ordered by id ascending."""
        placeholders = ", ".join("?" * len(config.INDEXABLE_STATUSES))
        cur = self.conn.execute(f"""
            SELECT id, content_type, status, title, body, featured_image_id
            FROM content_items
            WHERE status IN ({placeholders})
            ORDER BY id ASC
            LIMIT ? OFFSET ?
        """, (*config.INDEXABLE_STATUSES, limit, offset))
        return [ContentItem(*row) for row in cur.fetchall()]

    def set_content_meta(self, content_id: int, meta_key: str, value: Any):
        if not isinstance(value, str):
            value = json.dumps(value, ensure_ascii=False)
        self.conn.execute(
            "INSERT OR REPLACE INTO content_meta (content_id, meta_key, meta_value) VALUES (?, ?, ?)",
            (content_id, meta_key, value),
        )

    def get_content_meta(self, content_id: int, meta_key: str) -> Optional[str]:
        cur = self.conn.execute(
            "SELECT meta_value FROM content_meta WHERE content_id = ? AND meta_key = ?",
            (content_id, meta_key),
        )
        row = cur.fetchone()
        return row[0] if row else None

    # --- Options ---

    def get_option(self, name: str, default: Any = None) -> Any:
        cur = self.conn.execute("SELECT value FROM options WHERE name = ?", (name,))
        row = cur.fetchone()
        if row is None or row[0] is None:
            return default
        try:
            return json.loads(row[0])
        except ValueError:
            logging.warning(f"Option {name} holds invalid JSON; using default.")
            return default

    def set_option(self, name: str, value: Any):
        self.conn.execute(
            "INSERT OR REPLACE INTO options (name, value) VALUES (?, ?)", (name, json.dumps(value))
        )

    def get_option_id(self, name: str) -> int:
        """Reads an attachment id option (site icon, logo); 0 when unset."""
        value = self.get_option(name, 0)
        try:
            return max(int(value), 0)
        except (TypeError, ValueError):
            return 0

    # --- Hash Cache ---

    def get_hash_record(self, attachment_id: int) -> Optional[HashRecord]:
        cur = self.conn.execute(
            "SELECT attachment_id, digest, algorithm FROM attachment_hashes WHERE attachment_id = ?",
            (attachment_id,),
        )
        row = cur.fetchone()
        return HashRecord(*row) if row else None

    def save_hash(self, attachment_id: int, digest: str, algorithm: str):
        self.conn.execute("""
            INSERT OR REPLACE INTO attachment_hashes (attachment_id, digest, algorithm, computed_at)
            VALUES (?, ?, ?, ?)
        """, (attachment_id, digest, algorithm, utc_now()))

    def delete_hash(self, attachment_id: int):
        self.conn.execute("DELETE FROM attachment_hashes WHERE attachment_id = ?", (attachment_id,))

    def delete_all_hashes(self):
        self.conn.execute("DELETE FROM attachment_hashes")

    def find_ids_by_digest(self, digest: str, algorithm: str) -> List[int]:
        """Active attachments whose cached digest matches, ordered by id."""
        cur = self.conn.execute("""
            SELECT h.attachment_id
            FROM attachment_hashes h
            JOIN attachments a ON a.id = h.attachment_id
            WHERE h.digest = ? AND h.algorithm = ? AND a.status = ?
            ORDER BY h.attachment_id ASC
        """, (digest, algorithm, config.ATTACHMENT_ACTIVE))
        return [row[0] for row in cur.fetchall()]

    # --- Review Flags ---

    def set_flag(self, attachment_id: int, flagged_at: Optional[str] = None):
        self.conn.execute(
            "INSERT OR REPLACE INTO attachment_flags (attachment_id, flagged_at) VALUES (?, ?)",
            (attachment_id, flagged_at or utc_now()),
        )

    def clear_flag(self, attachment_id: int):
        self.conn.execute("DELETE FROM attachment_flags WHERE attachment_id = ?", (attachment_id,))

    def get_flagged_at(self, attachment_id: int) -> Optional[str]:
        cur = self.conn.execute(
            "SELECT flagged_at FROM attachment_flags WHERE attachment_id = ?", (attachment_id,)
        )
        row = cur.fetchone()
        return row[0] if row else None

    def count_flagged(self) -> int:
        cur = self.conn.execute("SELECT COUNT(DISTINCT attachment_id) FROM attachment_flags")
        return int(cur.fetchone()[0])

    def fetch_flagged_ids(self) -> List[int]:
        cur = self.conn.execute("""
            SELECT f.attachment_id
            FROM attachment_flags f
            JOIN attachments a ON a.id = f.attachment_id
            WHERE a.status = ?
            ORDER BY f.flagged_at DESC, f.attachment_id ASC
        """, (config.ATTACHMENT_ACTIVE,))
        return [row[0] for row in cur.fetchall()]

    # --- Duplicate Primary Markers ---

    def is_marked_primary(self, attachment_id: int) -> bool:
        cur = self.conn.execute(
            "SELECT 1 FROM duplicate_primary WHERE attachment_id = ?", (attachment_id,)
        )
        return cur.fetchone() is not None

    def mark_primary(self, attachment_id: int):
        self.conn.execute(
            "INSERT OR REPLACE INTO duplicate_primary (attachment_id, marked_at) VALUES (?, ?)",
            (attachment_id, utc_now()),
        )

    def clear_primary(self, attachment_ids: Iterable[int]):
        self.conn.executemany(
            "DELETE FROM duplicate_primary WHERE attachment_id = ?",
            [(i,) for i in attachment_ids],
        )

    # --- Trash Records ---

    def save_trash_record(self, attachment_id: int, previous_status: str):
        self.conn.execute("""
            INSERT OR REPLACE INTO attachment_trash (attachment_id, previous_status, trashed_at)
            VALUES (?, ?, ?)
        """, (attachment_id, previous_status, utc_now()))

    def get_trash_previous_status(self, attachment_id: int) -> Optional[str]:
        cur = self.conn.execute(
            "SELECT previous_status FROM attachment_trash WHERE attachment_id = ?", (attachment_id,)
        )
        row = cur.fetchone()
        return row[0] if row else None

    def delete_trash_record(self, attachment_id: int):
        self.conn.execute("DELETE FROM attachment_trash WHERE attachment_id = ?", (attachment_id,))

    def count_trashed_by_cleanup(self) -> int:
        cur = self.conn.execute("""
            SELECT COUNT(*) FROM attachment_trash t
            JOIN attachments a ON a.id = t.attachment_id
            WHERE a.status = ?
        """, (config.ATTACHMENT_TRASHED,))
        return int(cur.fetchone()[0])

    def fetch_trashed_by_cleanup(self, offset: int, limit: int) -> List[Dict[str, Any]]:
        """Attachments this tool trashed, newest first."""
        cur = self.conn.execute("""
            SELECT t.attachment_id, t.trashed_at
            FROM attachment_trash t
            JOIN attachments a ON a.id = t.attachment_id
            WHERE a.status = ?
            ORDER BY t.trashed_at DESC, t.attachment_id DESC
            LIMIT ? OFFSET ?
        """, (config.ATTACHMENT_TRASHED, limit, offset))
        return [{'attachment_id': r[0], 'trashed_at': r[1]} for r in cur.fetchall()]
