"""
Configuration constants for media cleanup.
"""

# --- Scan Types ---
SCAN_TYPES = ('unused', 'duplicate', 'oversized')
DEFAULT_SCAN_TYPES = ['unused', 'duplicate']

# Progress state values
STATUS_IDLE = 'idle'
STATUS_RUNNING = 'running'
STATUS_CANCELLED = 'cancelled'
STATUS_COMPLETE = 'complete'

PHASE_INDEXING = 'indexing'
PHASE_HASHING = 'hashing'
PHASE_DETECTING = 'detecting'
PHASE_DONE = 'done'

# --- Content Store ---
# Content items in these states are scanned for references
INDEXABLE_STATUSES = ('publish', 'draft', 'private', 'pending')

ATTACHMENT_ACTIVE = 'active'
ATTACHMENT_TRASHED = 'trashed'

# Widget area whose instances never count as references
INACTIVE_WIDGET_AREA = 'inactive'

# --- Reference Extraction ---
# Meta keys from popular page builders
PAGE_BUILDER_META_KEYS = [
    '_elementor_data',
    '_fl_builder_data',
    'panels_data',
    '_fusion_builder_data',
]

CONTENT_SCAN_DEPTHS = ('full', 'featured_only', 'none')

UPLOADS_MARKER = 'wp-content/uploads/'

# --- Hashing ---
DEFAULT_HASH_ALGORITHM = 'sha256'
HASH_CHUNK_SIZE = 64 * 1024  # 64 KB chunks for reading

# --- Oversized Thresholds (bytes) ---
DEFAULT_THRESHOLDS = {
    'image': 2 * 1024 * 1024,
    'video': 100 * 1024 * 1024,
    'audio': 20 * 1024 * 1024,
    'document': 10 * 1024 * 1024,
}

# --- Batching ---
DEFAULT_BATCH_SIZE = 100
MAX_BATCH_SIZE = 1000

# Inserts are chunked to keep statements small
INSERT_CHUNK_SIZE = 500

# Bulk actions walk ids in chunks of this size
ACTION_CHUNK_SIZE = 50

# --- Task Queue ---
TASK_MAX_ATTEMPTS = 3
TASK_RETRY_DELAY = 30  # seconds, multiplied by attempt number
WORKER_POLL_INTERVAL = 2.0

# --- Results Paging ---
RESULT_TYPES = ('unused', 'duplicate', 'oversized', 'flagged', 'trash')
RESULT_ORDERBY = ('file_size', 'upload_date', 'title')
RESULTS_PER_PAGE = 20
RESULTS_MAX_PER_PAGE = 100
GROUPS_PER_PAGE = 10
GROUPS_MAX_PER_PAGE = 50
