import time
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .actions import MediaActions
from .database.db import DBManager
from .database.ops import DBOperations
from .exceptions import TaskError
from .hooks import ExtensionRegistry
from .indexing.reference_index import ReferenceIndex
from .library import MediaLibrary
from .reporting import ResultsQuery
from .scanning.detectors import UnusedDetector, DuplicateDetector, OversizedDetector
from .scanning.hasher import HashService
from .scanning.orchestrator import ScanOrchestrator
from .scanning.queue import TaskQueue
from .scanning.results import ProgressStore
from .settings import SettingsService
from . import config


class MediaCleanupApp:
    """
    Wires every service onto one database connection.

        with MediaCleanupApp(db_path, upload_dir) as app:
            app.orchestrator.start(['unused'])
            app.run_worker(exit_when_idle=True)
    """
    def __init__(self,
                 db_path: Union[Path, str],
                 upload_dir: Union[Path, str],
                 hooks: Optional[ExtensionRegistry] = None):
        self.db_manager = DBManager(db_path)
        self.upload_dir = Path(upload_dir)
        self.hooks = hooks or ExtensionRegistry()
        self.conn = None

    def open(self) -> 'MediaCleanupApp':
        if self.conn is not None:
            return self

        self.conn = self.db_manager.connect()
        self.db = DBOperations(self.conn)
        self.library = MediaLibrary(self.db, self.upload_dir)
        self.settings = SettingsService(self.db, self.hooks)
        self.reference_index = ReferenceIndex(self.db, self.library, self.settings, self.hooks)
        self.hash_service = HashService(self.db, self.library, self.settings)

        self.duplicate_detector = DuplicateDetector(self.db, self.library, self.hash_service)
        self.detectors = {
            'unused': UnusedDetector(self.db, self.library, self.reference_index, self.settings, self.hooks),
            'duplicate': self.duplicate_detector,
            'oversized': OversizedDetector(self.db, self.library, self.settings),
        }

        self.queue = TaskQueue(self.conn, lock=self.db_manager.write_lock)
        self.orchestrator = ScanOrchestrator(
            self.db,
            self.reference_index,
            self.hash_service,
            self.detectors,
            self.settings,
            self.hooks,
            self.queue,
        )
        self.query = ResultsQuery(self.db, self.library, self.reference_index, self.duplicate_detector)
        self.actions = MediaActions(self.db, self.library, self.settings, self.hooks)
        return self

    def close(self):
        self.db_manager.close()
        self.conn = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def run_worker(self,
                   poll_interval: float = config.WORKER_POLL_INTERVAL,
                   exit_when_idle: bool = False) -> int:
        """
        Executes queued scan batches until interrupted, or until the queue
        is empty when exit_when_idle is set. Returns the number of tasks run.
        """
        if self.orchestrator.resume():
            logging.info("Re-queued an interrupted scan.")

        ran = 0
        while True:
            try:
                if self.queue.run_next(self.orchestrator.handlers):
                    ran += 1
                    continue
            except TaskError as e:
                logging.error(str(e))
                continue

            if exit_when_idle and self.queue.next_run_at() is None:
                break
            time.sleep(poll_interval)

        logging.info(f"Worker stopped after {ran} task(s).")
        return ran

    def status(self) -> Dict[str, Any]:
        """
        Scan progress plus queue counts, read on a separate connection so
        a worker's uncommitted batch is never observed.
        """
        if str(self.db_manager.db_path) == ':memory:':
            # A second in-memory connection would open an empty database
            return self._read_status(self.conn)

        conn = self.db_manager.reader()
        try:
            return self._read_status(conn)
        finally:
            conn.close()

    @staticmethod
    def _read_status(conn) -> Dict[str, Any]:
        data = ProgressStore(conn).load().to_dict()
        queue = TaskQueue(conn)
        data['pending_tasks'] = queue.pending_count()
        data['failed_tasks'] = queue.failed_count()
        return data
