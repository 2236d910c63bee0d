from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any

from . import config


@dataclass
class Attachment:
    """
    A media file known to the library.
    """
    id: int
    title: str
    file_path: str          # relative to the upload directory
    mime_type: str
    status: str             # active/trashed
    created_at: str         # ISO timestamp, used to pick duplicate primaries
    width: Optional[int] = None
    height: Optional[int] = None
    folder: Optional[str] = None

    @property
    def filename(self) -> str:
        return self.file_path.rsplit('/', 1)[-1]

    @property
    def is_trashed(self) -> bool:
        return self.status == config.ATTACHMENT_TRASHED


@dataclass
class ContentItem:
    """A post/page whose body and meta may reference attachments."""
    id: int
    content_type: str
    status: str
    title: str = ''
    body: str = ''
    featured_image_id: Optional[int] = None


@dataclass(frozen=True)
class ReferenceRecord:
    attachment_id: int
    source_type: str
    source_id: int = 0


@dataclass
class HashRecord:
    attachment_id: int
    digest: str
    algorithm: str


@dataclass
class Finding:
    """
    A detector verdict for one attachment under one issue type.
    Type-specific fields stay None when they do not apply.
    """
    type: str
    attachment_id: int
    title: str = ''
    filename: str = ''
    mime_type: str = ''
    file_size: int = 0
    upload_date: str = ''
    width: int = 0
    height: int = 0

    # duplicate
    hash: Optional[str] = None
    is_primary: Optional[bool] = None
    group_ids: Optional[List[int]] = None
    group_count: Optional[int] = None

    # oversized
    threshold: Optional[int] = None
    over_by: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Finding':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class ScanProgress:
    """Process-wide scan state plus the cursor for the next batch."""
    status: str = config.STATUS_IDLE
    phase: str = ''
    total: int = 0
    processed: int = 0
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    types: List[str] = field(default_factory=list)
    offset: int = 0
    batch_size: int = config.DEFAULT_BATCH_SIZE

    @property
    def is_running(self) -> bool:
        return self.status == config.STATUS_RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScanStats:
    total_media: int = 0
    unused_count: int = 0
    duplicate_count: int = 0
    oversized_count: int = 0
    duplicate_groups: int = 0
    flagged_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class DuplicateGroup:
    hash: str
    count: int
    members: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def primary_id(self) -> Optional[int]:
        for member in self.members:
            if member.get('is_primary'):
                return member['attachment_id']
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
