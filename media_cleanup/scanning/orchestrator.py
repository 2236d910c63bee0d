"""
Scan orchestration: a resumable, batched state machine.

    idle -> running -> complete
                    -> cancelled
    (any) -> idle via reset()

A running scan moves through the phases indexing -> hashing -> detecting
-> done. Each phase is a chain of queued batch tasks; every task persists
the progress row (including the cursor for the next batch) and schedules
its successor inside the same transaction, so a restart picks up exactly
where the last committed batch left off.
"""
import math
import time
import logging
from typing import Callable, Dict, Iterable, List, Optional

from .. import config
from ..database.ops import DBOperations, utc_now
from ..exceptions import InvalidScanTypesError
from ..hooks import ExtensionRegistry
from ..indexing.reference_index import ReferenceIndex
from ..models import Finding, ScanProgress, ScanStats
from ..settings import SettingsService
from .detectors import Detector
from .hasher import HashService
from .queue import TaskQueue
from .results import ResultsStore, ProgressStore

HANDLER_INDEX = 'build_index_batch'
HANDLER_HASH = 'hash_batch'
HANDLER_DETECT = 'run_detectors'
HANDLER_FINALIZE = 'finalize_scan'

SCAN_HANDLERS = (HANDLER_INDEX, HANDLER_HASH, HANDLER_DETECT, HANDLER_FINALIZE)


def normalize_scan_types(types: Optional[Iterable[str]]) -> List[str]:
    """Empty means the default set; unknown names are rejected."""
    requested = [t for t in (types or []) if t]
    if not requested:
        return list(config.DEFAULT_SCAN_TYPES)

    unknown = [t for t in requested if t not in config.SCAN_TYPES]
    if unknown:
        raise InvalidScanTypesError(
            f"Unknown scan type(s): {', '.join(unknown)}. Must be one of: {', '.join(config.SCAN_TYPES)}"
        )
    return list(dict.fromkeys(requested))


class ScanOrchestrator:
    def __init__(self,
                 db_ops: DBOperations,
                 reference_index: ReferenceIndex,
                 hash_service: HashService,
                 detectors: Dict[str, Detector],
                 settings: SettingsService,
                 hooks: ExtensionRegistry,
                 queue: TaskQueue):
        self.db = db_ops
        self.conn = db_ops.conn
        self.reference_index = reference_index
        self.hash_service = hash_service
        self.detectors = detectors
        self.settings = settings
        self.hooks = hooks
        self.queue = queue
        self.results = ResultsStore(self.conn)
        self.progress = ProgressStore(self.conn)

    @property
    def handlers(self) -> Dict[str, Callable[..., None]]:
        return {
            HANDLER_INDEX: self.handle_index_batch,
            HANDLER_HASH: self.handle_hash_batch,
            HANDLER_DETECT: self.handle_detect_batch,
            HANDLER_FINALIZE: self.handle_finalize,
        }

    # --- Control ---

    def start(self, types: Optional[Iterable[str]] = None, batch_size: Optional[int] = None) -> bool:
        """
        Begins a new scan. Returns False if one is already running.
        Raises InvalidScanTypesError before touching any state.
        """
        scan_types = normalize_scan_types(types)
        batch_size = max(1, min(int(batch_size or self.settings.batch_size()), config.MAX_BATCH_SIZE))

        with self.queue.lock:
            if self.progress.load().is_running:
                logging.info("Scan already running; start ignored.")
                return False

            total_items = self.reference_index.get_total_items()
            total_attachments = self.db.count_attachments()
            passes = 2 if 'duplicate' in scan_types else 1

            self.results.clear()
            self.progress.save(ScanProgress(
                status=config.STATUS_RUNNING,
                phase=config.PHASE_INDEXING,
                total=total_items + total_attachments * passes,
                processed=0,
                started_at=utc_now(),
                completed_at=None,
                types=scan_types,
                offset=0,
                batch_size=batch_size,
            ))

            self.reference_index.clear()
            self.reference_index.build_global_references()

            self.queue.schedule(time.time(), HANDLER_INDEX, {'offset': 0, 'batch_size': batch_size})
            self.conn.commit()

        logging.info(f"Scan started: types={scan_types}, batch_size={batch_size}, "
                     f"{total_items} content item(s), {total_attachments} attachment(s).")
        return True

    def cancel(self) -> bool:
        """Stops a running scan. Returns False when none was running."""
        with self.queue.lock:
            progress = self.progress.load()
            removed = self.queue.unschedule_all(SCAN_HANDLERS)

            if not progress.is_running:
                self.conn.commit()
                return False

            self.progress.save(ScanProgress(status=config.STATUS_CANCELLED, types=progress.types))
            self.conn.commit()

        logging.info(f"Scan cancelled ({removed} queued task(s) removed).")
        return True

    def reset(self):
        self.cancel()
        with self.queue.lock:
            self.results.clear()
            self.progress.reset()
            self.conn.commit()
        logging.info("Scan state reset.")

    def resume(self) -> bool:
        """
        Re-queues the next batch when progress says running but nothing is
        queued to continue it. Returns True if a task was scheduled.
        """
        with self.queue.lock:
            progress = self.progress.load()
            if not progress.is_running:
                return False
            if any(self.queue.pending_count(h) for h in SCAN_HANDLERS):
                return False

            handler = {
                config.PHASE_INDEXING: HANDLER_INDEX,
                config.PHASE_HASHING: HANDLER_HASH,
                config.PHASE_DETECTING: HANDLER_DETECT,
            }.get(progress.phase, HANDLER_FINALIZE)

            args = {} if handler == HANDLER_FINALIZE else {
                'offset': progress.offset,
                'batch_size': progress.batch_size,
            }
            self.queue.schedule(time.time(), handler, args)
            self.conn.commit()

        logging.info(f"Scan resumed at phase '{progress.phase}', offset {progress.offset}.")
        return True

    def run_sync(self,
                 types: Optional[Iterable[str]] = None,
                 batch_size: Optional[int] = None,
                 on_batch: Optional[Callable[[ScanProgress], None]] = None) -> Optional[ScanProgress]:
        """
        Runs a whole scan in this process, draining the queue.
        Retries run immediately instead of waiting out their backoff.
        Returns None if a scan was already running.
        """
        if not self.start(types, batch_size):
            return None

        while self.queue.run_next(self.handlers, now=math.inf):
            if on_batch:
                on_batch(self.progress.load())

        return self.progress.load()

    # --- Batch handlers (run inside the queue's transaction) ---

    def handle_index_batch(self, offset: int = 0, batch_size: int = config.DEFAULT_BATCH_SIZE):
        progress = self._running_progress(HANDLER_INDEX)
        if progress is None:
            return

        processed = self.reference_index.build_index_batch(offset, batch_size)
        progress.processed += processed

        if processed >= batch_size:
            progress.offset = offset + batch_size
            self.progress.save(progress)
            self.queue.schedule(time.time(), HANDLER_INDEX, {'offset': progress.offset, 'batch_size': batch_size})
            return

        logging.info(f"Indexing complete ({progress.processed} item(s) processed).")
        if 'duplicate' in progress.types:
            self._next_phase(progress, config.PHASE_HASHING, HANDLER_HASH, batch_size)
        else:
            self._next_phase(progress, config.PHASE_DETECTING, HANDLER_DETECT, batch_size)

    def handle_hash_batch(self, offset: int = 0, batch_size: int = config.DEFAULT_BATCH_SIZE):
        progress = self._running_progress(HANDLER_HASH)
        if progress is None:
            return

        if 'duplicate' not in progress.types:
            self._next_phase(progress, config.PHASE_DETECTING, HANDLER_DETECT, batch_size)
            return

        attachment_ids = self.db.fetch_attachment_ids(offset, batch_size)
        if not attachment_ids:
            logging.info("Hashing complete.")
            self._next_phase(progress, config.PHASE_DETECTING, HANDLER_DETECT, batch_size)
            return

        hashed = self.hash_service.hash_batch(attachment_ids)
        logging.debug(f"Hashed {hashed}/{len(attachment_ids)} attachment(s) at offset {offset}.")

        progress.processed += len(attachment_ids)
        progress.offset = offset + batch_size
        self.progress.save(progress)
        self.queue.schedule(time.time(), HANDLER_HASH, {'offset': progress.offset, 'batch_size': batch_size})

    def handle_detect_batch(self, offset: int = 0, batch_size: int = config.DEFAULT_BATCH_SIZE):
        progress = self._running_progress(HANDLER_DETECT)
        if progress is None:
            return

        attachment_ids = self.db.fetch_attachment_ids(offset, batch_size)
        if not attachment_ids:
            logging.info("Detection complete.")
            self.queue.schedule(time.time(), HANDLER_FINALIZE, {})
            return

        for scan_type in progress.types:
            detector = self.detectors.get(scan_type)
            if detector is None:
                continue
            findings = detector.detect(attachment_ids)
            self.results.merge(scan_type, findings)
            if findings:
                logging.debug(f"{detector.label}: {len(findings)} finding(s) at offset {offset}.")

        progress.processed += len(attachment_ids)
        progress.offset = offset + batch_size
        self.progress.save(progress)
        self.queue.schedule(time.time(), HANDLER_DETECT, {'offset': progress.offset, 'batch_size': batch_size})

    def handle_finalize(self):
        progress = self._running_progress(HANDLER_FINALIZE)
        if progress is None:
            return

        progress.status = config.STATUS_COMPLETE
        progress.phase = config.PHASE_DONE
        progress.completed_at = utc_now()
        self.progress.save(progress)

        counts = self.results.counts()
        logging.info("Scan complete: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
        self.hooks.emit('scan_complete', self.results.all())

    # --- Reads ---

    def get_progress(self) -> ScanProgress:
        return self.progress.load()

    def get_results(self, issue_type: Optional[str] = None) -> Dict[str, Dict[int, Finding]]:
        if issue_type:
            return {issue_type: self.results.get(issue_type)}
        return self.results.all()

    def get_stats(self) -> ScanStats:
        counts = self.results.counts()
        return ScanStats(
            total_media=self.db.count_attachments(),
            unused_count=counts.get('unused', 0),
            duplicate_count=counts.get('duplicate', 0),
            oversized_count=counts.get('oversized', 0),
            duplicate_groups=self.results.duplicate_group_count(),
            flagged_count=self.db.count_flagged(),
        )

    # --- Helpers ---

    def _running_progress(self, handler: str) -> Optional[ScanProgress]:
        progress = self.progress.load()
        if not progress.is_running:
            logging.debug(f"Ignoring stale {handler} task; scan is {progress.status}.")
            return None
        return progress

    def _next_phase(self, progress: ScanProgress, phase: str, handler: str, batch_size: int):
        progress.phase = phase
        progress.offset = 0
        self.progress.save(progress)
        self.queue.schedule(time.time(), handler, {'offset': 0, 'batch_size': batch_size})
        logging.info(f"Scan phase: {phase}.")
