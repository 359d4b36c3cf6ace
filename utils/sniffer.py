import re
from typing import Optional

from config import SNIFF_MAX_BYTES

PLAYLIST = "playlist"
SEGMENT = "segment"
SUBTITLE = "subtitle"
BINARY = "binary"
# Not decided by metadata alone; the body may be peeked at.
SNIFF = "sniff"

SEGMENT_MARKERS = ('.ts', '.m4s', '.mp4', '.mkv', '.aac', '.mp3', '.key', '/segment/')

_PLAYLIST_TYPE_RE = re.compile(r"mpegurl|m3u8", re.IGNORECASE)
_PLAYLIST_TEXT_RE = re.compile(r"^#EXTM3U\b", re.MULTILINE)
_ERROR_PAGE_RE = re.compile(
    r'\s*(<!doctype\s+html|<html|\{\s*"error"|error\b|access denied|forbidden|video id not found)',
    re.IGNORECASE,
)


def normalize_kind(kind: Optional[str]) -> Optional[str]:
    """Maps the `kind` query value ("playlist", "seg", "segment") to a classification."""
    if not kind:
        return None
    kind = kind.strip().lower()
    if kind == PLAYLIST:
        return PLAYLIST
    if kind in ("seg", SEGMENT):
        return SEGMENT
    return None


def is_probably_segment_url(url: str) -> bool:
    lower = url.lower()
    return any(marker in lower for marker in SEGMENT_MARKERS)


def is_subtitle(url: str, content_type: str) -> bool:
    return '.srt' in url.lower() or 'subrip' in (content_type or '').lower()


def can_sniff(url: str, content_type: str, content_length: Optional[int]) -> bool:
    """True when the body is small enough (or of unknown size) and not declared binary."""
    if is_probably_segment_url(url):
        return False
    if content_length and content_length > SNIFF_MAX_BYTES:
        return False
    return 'application/octet-stream' not in (content_type or '').lower()


def classify(url: str, content_type: str = '', content_length: Optional[int] = None,
             kind: Optional[str] = None) -> str:
    """
    Classifies an upstream response from its metadata.

    Returns PLAYLIST, SEGMENT, SUBTITLE, BINARY, or SNIFF when a bounded peek at the body
    should decide between PLAYLIST and BINARY.
    """
    content_type = content_type or ''
    # Subtitles are converted even when the caller forced a kind
    if is_subtitle(url, content_type):
        return SUBTITLE

    forced = normalize_kind(kind)
    if forced:
        return forced

    if '.m3u8' in url.lower() or _PLAYLIST_TYPE_RE.search(content_type):
        return PLAYLIST

    if is_probably_segment_url(url):
        return SEGMENT

    if can_sniff(url, content_type, content_length):
        return SNIFF
    return BINARY


def looks_like_playlist(text: Optional[str]) -> bool:
    return bool(text) and _PLAYLIST_TEXT_RE.search(text) is not None


def looks_like_error_page(text: Optional[str]) -> bool:
    """HTML or denial pages some hosts return with HTTP 200 instead of media."""
    return bool(text) and not looks_like_playlist(text) and _ERROR_PAGE_RE.match(text[:2048]) is not None


def decode_probe(data: bytes) -> Optional[str]:
    """Decodes a peeked body as text; binary payloads yield None."""
    if b'\x00' in data[:1024]:
        return None
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        return None
