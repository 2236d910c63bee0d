"""
Attachment reference extraction from content bodies and meta values.

Each extractor takes (text, library) and returns the attachment ids it
found. Extraction is conservative: generic numeric patterns are kept only
when the id belongs to an existing attachment, and URLs are resolved back
to attachments through the library.
"""
import re
from typing import Callable, Iterable, List, Set

from ..library import MediaLibrary

Extractor = Callable[[str, MediaLibrary], Set[int]]

IMAGE_CLASS_RE = re.compile(r'wp-image-(\d+)')
BLOCK_ID_RE = re.compile(r'wp:(?:image|cover|video|audio|file)\s+\{[^}]*"id"\s*:\s*(\d+)')
MEDIA_TEXT_RE = re.compile(r'wp:media-text\s+\{[^}]*"mediaId"\s*:\s*(\d+)')
GENERIC_ID_RE = re.compile(r'"id"\s*:\s*(\d+)')
ATTACHMENT_LINK_RE = re.compile(r'\?attachment_id=(\d+)')
UPLOAD_URL_RE = re.compile(r'(?:https?:)?//[^"\'>\s]+/wp-content/uploads/[^"\'>\s]+')

META_ID_RE = re.compile(r'"(?:id|image_id|attach_id|attachment_id)"\s*:\s*"?(\d+)"?')
META_UPLOAD_PATH_RE = re.compile(r'wp-content/uploads/[^"\'>\s\\]+')


def _ints(values: Iterable[str]) -> Set[int]:
    return {int(v) for v in values if int(v) > 0}


# --- Structural markers ---

def extract_image_classes(text: str, library: MediaLibrary) -> Set[int]:
    return _ints(IMAGE_CLASS_RE.findall(text))


def extract_block_ids(text: str, library: MediaLibrary) -> Set[int]:
    return _ints(BLOCK_ID_RE.findall(text))


def extract_media_text_ids(text: str, library: MediaLibrary) -> Set[int]:
    return _ints(MEDIA_TEXT_RE.findall(text))


def extract_attachment_links(text: str, library: MediaLibrary) -> Set[int]:
    return _ints(ATTACHMENT_LINK_RE.findall(text))


# --- Generic keys, validated against real attachments ---

def extract_generic_ids(text: str, library: MediaLibrary) -> Set[int]:
    """Catches gallery inner images and similar {"id": n} payloads."""
    candidates = _ints(GENERIC_ID_RE.findall(text))
    if not candidates:
        return set()
    return library.db.existing_attachment_ids(candidates)


def extract_meta_key_ids(text: str, library: MediaLibrary) -> Set[int]:
    candidates = _ints(META_ID_RE.findall(text))
    if not candidates:
        return set()
    return library.db.existing_attachment_ids(candidates)


# --- URL resolution ---

def extract_upload_urls(text: str, library: MediaLibrary) -> Set[int]:
    ids = set()
    for url in UPLOAD_URL_RE.findall(text):
        attachment_id = library.resolve_upload_url(url)
        if attachment_id:
            ids.add(attachment_id)
    return ids


def extract_meta_upload_paths(text: str, library: MediaLibrary) -> Set[int]:
    ids = set()
    for path in META_UPLOAD_PATH_RE.findall(text):
        attachment_id = library.resolve_upload_url(path)
        if attachment_id:
            ids.add(attachment_id)
    return ids


CONTENT_EXTRACTORS: List[Extractor] = [
    extract_image_classes,
    extract_block_ids,
    extract_media_text_ids,
    extract_generic_ids,
    extract_attachment_links,
    extract_upload_urls,
]

META_EXTRACTORS: List[Extractor] = [
    extract_meta_key_ids,
    extract_meta_upload_paths,
]


def extract_ids(text: str, library: MediaLibrary, extractors: Iterable[Extractor]) -> Set[int]:
    if not text:
        return set()
    ids: Set[int] = set()
    for extractor in extractors:
        ids |= extractor(text, library)
    return ids


def extract_content_ids(text: str, library: MediaLibrary) -> Set[int]:
    return extract_ids(text, library, CONTENT_EXTRACTORS)


def extract_meta_ids(text: str, library: MediaLibrary) -> Set[int]:
    # Serialized builder data often escapes slashes
    return extract_ids(text.replace('\\/', '/') if text else text, library, META_EXTRACTORS)
