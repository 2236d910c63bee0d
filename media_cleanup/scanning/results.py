"""
Durable scan state: findings per issue type and the singleton progress row.
Like DBOperations, neither store commits.
"""
import json
import sqlite3
from typing import Dict, Iterable, List, Mapping, Union

from .. import config
from ..models import Finding, ScanProgress


class ResultsStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def merge(self, issue_type: str, findings: Union[Mapping[int, Finding], Iterable[Finding]]) -> int:
        """Replace-by-key: a finding overwrites any earlier one for the same attachment."""
        if isinstance(findings, Mapping):
            findings = findings.values()
        rows = [(issue_type, f.attachment_id, json.dumps(f.to_dict())) for f in findings]
        if rows:
            self.conn.executemany("""
                INSERT OR REPLACE INTO scan_results (issue_type, attachment_id, payload)
                VALUES (?, ?, ?)
            """, rows)
        return len(rows)

    def get(self, issue_type: str) -> Dict[int, Finding]:
        cur = self.conn.execute(
            "SELECT attachment_id, payload FROM scan_results WHERE issue_type = ? ORDER BY attachment_id",
            (issue_type,),
        )
        return {row[0]: Finding.from_dict(json.loads(row[1])) for row in cur.fetchall()}

    def all(self) -> Dict[str, Dict[int, Finding]]:
        return {issue_type: self.get(issue_type) for issue_type in config.SCAN_TYPES}

    def types_for(self, attachment_id: int) -> List[str]:
        cur = self.conn.execute(
            "SELECT issue_type FROM scan_results WHERE attachment_id = ?", (attachment_id,)
        )
        return [row[0] for row in cur.fetchall()]

    def remove(self, attachment_id: int):
        """Drops every finding for an attachment that no longer exists."""
        self.conn.execute("DELETE FROM scan_results WHERE attachment_id = ?", (attachment_id,))

    def clear(self):
        self.conn.execute("DELETE FROM scan_results")

    def counts(self) -> Dict[str, int]:
        counts = {issue_type: 0 for issue_type in config.SCAN_TYPES}
        cur = self.conn.execute("SELECT issue_type, COUNT(*) FROM scan_results GROUP BY issue_type")
        for issue_type, count in cur.fetchall():
            counts[issue_type] = count
        return counts

    def duplicate_group_count(self) -> int:
        digests = set()
        cur = self.conn.execute("SELECT payload FROM scan_results WHERE issue_type = 'duplicate'")
        for (payload,) in cur.fetchall():
            digest = json.loads(payload).get('hash')
            if digest:
                digests.add(digest)
        return len(digests)


class ProgressStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def load(self) -> ScanProgress:
        cur = self.conn.execute("""
            SELECT status, phase, total, processed, started_at, completed_at, types, cursor_offset, batch_size
            FROM scan_progress WHERE id = 1
        """)
        row = cur.fetchone()
        if row is None:
            return ScanProgress()
        return ScanProgress(
            status=row[0],
            phase=row[1],
            total=row[2],
            processed=row[3],
            started_at=row[4],
            completed_at=row[5],
            types=json.loads(row[6] or '[]'),
            offset=row[7],
            batch_size=row[8],
        )

    def save(self, progress: ScanProgress):
        self.conn.execute("""
            INSERT OR REPLACE INTO scan_progress
                (id, status, phase, total, processed, started_at, completed_at, types, cursor_offset, batch_size)
            VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            progress.status,
            progress.phase,
            progress.total,
            progress.processed,
            progress.started_at,
            progress.completed_at,
            json.dumps(progress.types),
            progress.offset,
            progress.batch_size,
        ))

    def reset(self) -> ScanProgress:
        progress = ScanProgress()
        self.save(progress)
        return progress
