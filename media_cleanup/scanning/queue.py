"""
Durable batch-task runner backed by the scan_tasks table.

A task is claimed, executed and removed inside one transaction together
with everything its handler writes. If the process dies mid-batch the
transaction never commits, the task row is still there, and the batch runs
again: delivery is at-least-once, so handlers must be idempotent.
"""
import json
import time
import logging
import sqlite3
import threading
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from .. import config
from ..exceptions import TaskError

Handler = Callable[..., Any]

TASK_PENDING = 'pending'
TASK_FAILED = 'failed'


class TaskQueue:
    def __init__(self,
                 conn: sqlite3.Connection,
                 lock: Optional[threading.Lock] = None,
                 max_attempts: int = config.TASK_MAX_ATTEMPTS,
                 retry_delay: float = config.TASK_RETRY_DELAY):
        self.conn = conn
        self.lock = lock or threading.Lock()
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    # --- Scheduling (joins the caller's transaction) ---

    def schedule(self, run_at: float, handler: str, args: Optional[Dict[str, Any]] = None) -> int:
        cur = self.conn.execute(
            "INSERT INTO scan_tasks (handler, args, run_at) VALUES (?, ?, ?)",
            (handler, json.dumps(args or {}), run_at),
        )
        return cur.lastrowid

    def unschedule_all(self, handlers: Union[str, Iterable[str]]) -> int:
        if isinstance(handlers, str):
            handlers = [handlers]
        names = list(handlers)
        placeholders = ", ".join("?" * len(names))
        cur = self.conn.execute(
            f"DELETE FROM scan_tasks WHERE status = ? AND handler IN ({placeholders})",
            (TASK_PENDING, *names),
        )
        return cur.rowcount

    def pending_count(self, handler: Optional[str] = None) -> int:
        if handler:
            cur = self.conn.execute(
                "SELECT COUNT(*) FROM scan_tasks WHERE status = ? AND handler = ?", (TASK_PENDING, handler)
            )
        else:
            cur = self.conn.execute("SELECT COUNT(*) FROM scan_tasks WHERE status = ?", (TASK_PENDING,))
        return int(cur.fetchone()[0])

    def failed_count(self) -> int:
        cur = self.conn.execute("SELECT COUNT(*) FROM scan_tasks WHERE status = ?", (TASK_FAILED,))
        return int(cur.fetchone()[0])

    def next_run_at(self) -> Optional[float]:
        cur = self.conn.execute("SELECT MIN(run_at) FROM scan_tasks WHERE status = ?", (TASK_PENDING,))
        return cur.fetchone()[0]

    # --- Execution ---

    def run_next(self, handlers: Mapping[str, Handler], now: Optional[float] = None) -> bool:
        """
        Runs the earliest due task. Returns False when nothing is due.
        Handler exceptions are retried with linear backoff, then the task
        is marked failed.
        """
        now = time.time() if now is None else now

        with self.lock:
            cur = self.conn.execute("""
                SELECT id, handler, args, attempts FROM scan_tasks
                WHERE status = ? AND run_at <= ?
                ORDER BY run_at ASC, id ASC
                LIMIT 1
            """, (TASK_PENDING, now))
            row = cur.fetchone()
            if row is None:
                return False

            task_id, name, raw_args, attempts = row
            handler = handlers.get(name)
            if handler is None:
                self._mark_failed(task_id, attempts, f"Unknown handler '{name}'")
                raise TaskError(f"Task {task_id} references unknown handler '{name}'")

            args = json.loads(raw_args or '{}')
            try:
                self.conn.execute("DELETE FROM scan_tasks WHERE id = ?", (task_id,))
                handler(**args)
                self.conn.commit()
            except Exception as e:
                self.conn.rollback()
                self._record_failure(task_id, name, attempts + 1, e)
            return True

    def run_pending(self, handlers: Mapping[str, Handler],
                    limit: Optional[int] = None, now: Optional[float] = None) -> int:
        """Runs due tasks until none remain or limit is reached. Returns the count run."""
        ran = 0
        while limit is None or ran < limit:
            if not self.run_next(handlers, now):
                break
            ran += 1
        return ran

    def _record_failure(self, task_id: int, name: str, attempts: int, error: Exception):
        if attempts >= self.max_attempts:
            logging.error(f"Task {name} (#{task_id}) failed after {attempts} attempt(s): {error}")
            self._mark_failed(task_id, attempts, str(error))
            return

        delay = self.retry_delay * attempts
        logging.warning(f"Task {name} (#{task_id}) failed (attempt {attempts}), retrying in {delay:.0f}s: {error}")
        self.conn.execute(
            "UPDATE scan_tasks SET attempts = ?, run_at = ?, last_error = ? WHERE id = ?",
            (attempts, time.time() + delay, str(error), task_id),
        )
        self.conn.commit()

    def _mark_failed(self, task_id: int, attempts: int, message: str):
        self.conn.execute(
            "UPDATE scan_tasks SET status = ?, attempts = ?, last_error = ? WHERE id = ?",
            (TASK_FAILED, attempts, message, task_id),
        )
        self.conn.commit()
