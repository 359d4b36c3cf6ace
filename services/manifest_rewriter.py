import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import quote, urljoin

from config import HLS_PATH, PROXY_PATH, SEGMENT_BATCHING, SEGMENT_BATCH_SIZE
from utils.crypto import decrypt_inline, decrypt_token

logger = logging.getLogger(__name__)

KIND_PLAYLIST = "playlist"
KIND_SEGMENT = "seg"

# Quoted attributes first (URI="..."), then unquoted ones terminated by comma/whitespace
_QUOTED_URI_RE = re.compile(r'\b(URI|KEYFORMATURI)="([^"]+)"', re.IGNORECASE)
_UNQUOTED_URI_RE = re.compile(r'\b(URI|KEYFORMATURI)=([^",\s][^,\s]*)', re.IGNORECASE)

# Tags whose presence makes merging segments unsafe
_NO_MERGE_TAGS = ('#EXT-X-KEY', '#EXT-X-DISCONTINUITY')


@dataclass(frozen=True)
class RewriteContext:
    """Everything a rewrite needs: the manifest's own upstream URL and the context to forward."""
    base_url: str
    referer: str = ""
    cookie: str = ""
    user_agent: str = ""
    decrypt_mode: Optional[str] = None
    proxy_segments: bool = True
    # '' for path-only proxy URLs, or 'https://host' when absolute URLs are required
    proxy_base: str = ""
    hls_path: str = HLS_PATH
    proxy_path: str = PROXY_PATH
    batch_segments: bool = SEGMENT_BATCHING
    batch_size: int = SEGMENT_BATCH_SIZE

    @classmethod
    def from_proxy_request(cls, proxy_request, base_url: Optional[str] = None, proxy_base: str = "", **kwargs):
        return cls(
            base_url=proxy_request.target_url if base_url is None else base_url,
            referer=proxy_request.referer,
            cookie=proxy_request.cookie,
            user_agent=proxy_request.user_agent,
            decrypt_mode=proxy_request.decrypt_mode,
            proxy_segments=proxy_request.proxy_segments,
            proxy_base=proxy_base,
            **kwargs,
        )

    def forwarding_params(self) -> List[Tuple[str, str]]:
        params = []
        if self.referer:
            params.append(('referer', self.referer))
        if self.cookie:
            params.append(('cookie', self.cookie))
        if self.user_agent:
            params.append(('ua', self.user_agent))
        if self.decrypt_mode:
            params.append(('decrypt', self.decrypt_mode))
        if not self.proxy_segments:
            params.append(('proxy_segments', 'false'))
        return params


def infer_kind(absolute_url: str) -> str:
    return KIND_PLAYLIST if 'm3u8' in absolute_url.lower() else KIND_SEGMENT


def parse_extinf_duration(line: str) -> Optional[float]:
    try:
        return float(line.split(':', 1)[1].split(',', 1)[0].strip())
    except (IndexError, ValueError):
        return None


def format_duration(seconds: float) -> str:
    # Rounded to bound float drift when summing many durations
    return repr(round(seconds, 5))


class ManifestRewriter:
    """
    Line-oriented M3U8 rewriting.

    Every media, key and variant reference is decrypted if it is a token, resolved against the
    manifest's upstream URL and replaced by a URL back into this proxy that carries the
    forwarding context. References that already point at the proxy are left alone, which makes
    the rewrite idempotent.
    """

    def __init__(self, ctx: RewriteContext):
        self.ctx = ctx
        self._suffix = '&'.join(f"{k}={quote(v, safe='')}" for k, v in ctx.forwarding_params())
        self._prefixes = tuple(
            f"{base}{path}?"
            for path in (ctx.hls_path, ctx.proxy_path)
            for base in {"", ctx.proxy_base}
        )

    # --- references ---

    def is_proxied(self, uri: str) -> bool:
        return uri.strip().startswith(self._prefixes)

    def resolve(self, ref: str) -> str:
        """Makes `ref` absolute against the manifest's upstream URL (root, parent and query-only forms)."""
        ref = ref.strip()
        if self.is_proxied(ref) or re.match(r'^https?://', ref, re.IGNORECASE):
            return ref
        if not self.ctx.base_url:
            return ref
        try:
            return urljoin(self.ctx.base_url, ref)
        except ValueError:
            return ref

    def wrap(self, absolute_url: str, kind: Optional[str] = None) -> str:
        if self.is_proxied(absolute_url):
            return absolute_url
        kind = kind or infer_kind(absolute_url)
        if kind == KIND_SEGMENT and not self.ctx.proxy_segments:
            return absolute_url
        url = f"{self.ctx.proxy_base}{self.ctx.hls_path}?url={quote(absolute_url, safe='')}&kind={kind}"
        return f"{url}&{self._suffix}" if self._suffix else url

    def concat_url(self, absolute_urls: List[str]) -> str:
        url = f"{self.ctx.proxy_base}{self.ctx.hls_path}?concat={quote('|'.join(absolute_urls), safe='')}"
        return f"{url}&{self._suffix}" if self._suffix else url

    def absolute(self, ref: str) -> str:
        """Decrypts (if a token) and resolves a reference without wrapping it."""
        ref = ref.strip()
        if self.is_proxied(ref):
            return ref
        return self.resolve(decrypt_token(ref, self.ctx.decrypt_mode))

    def rewrite_reference(self, ref: str) -> str:
        if self.is_proxied(ref):
            return ref.strip()
        return self.wrap(self.absolute(ref))

    # --- lines ---

    def rewrite_tag(self, line: str) -> str:
        # Tokens can hide anywhere in a tag, not only as whole attribute values
        out = decrypt_inline(line)

        def _quoted(match):
            return f'{match.group(1)}="{self.rewrite_reference(match.group(2))}"'

        def _unquoted(match):
            return f'{match.group(1)}={self.rewrite_reference(match.group(2))}'

        out = _QUOTED_URI_RE.sub(_quoted, out)
        return _UNQUOTED_URI_RE.sub(_unquoted, out)

    def rewrite_line(self, line: str) -> str:
        line = line.rstrip('\r')
        if line.strip() == '':
            return line
        if line.startswith('#'):
            return self.rewrite_tag(line)
        if self.is_proxied(line):
            return line
        return self.rewrite_reference(line)

    # --- manifests ---

    def can_batch(self, text: str) -> bool:
        return (
            self.ctx.batch_segments
            and self.ctx.proxy_segments
            and self.ctx.batch_size > 1
            and not any(tag in text for tag in _NO_MERGE_TAGS)
        )

    def rewrite(self, text: str) -> str:
        if self.can_batch(text):
            return SegmentBatcher(self).rewrite(text)
        return '\n'.join(self.rewrite_line(line) for line in text.split('\n'))


class SegmentBatcher:
    """
    Merges runs of adjacent unencrypted segments into one concat reference.

    A run is flushed when it reaches the batch size, when any other tag appears (so tag
    ordering is preserved) and at the end of the manifest. A run of one segment is emitted as
    a normal EXTINF + proxy URL pair. Plain comments found inside a run are emitted ahead of it.
    """

    def __init__(self, rewriter: ManifestRewriter):
        self.rewriter = rewriter
        self.batch_size = rewriter.ctx.batch_size
        self.output: List[str] = []
        self.buffer: List[Tuple[float, str, str]] = []  # (duration, absolute url, original EXTINF line)
        self.comments: List[str] = []

    def flush(self):
        self.output.extend(self.comments)
        self.comments = []
        if not self.buffer:
            return
        if len(self.buffer) == 1:
            _, url, extinf = self.buffer[0]
            self.output.append(extinf)
            self.output.append(self.rewriter.wrap(url))
        else:
            total = sum(duration for duration, _, _ in self.buffer)
            self.output.append(f"#EXTINF:{format_duration(total)},")
            self.output.append(self.rewriter.concat_url([url for _, url, _ in self.buffer]))
            logger.debug(f"🧩 Merged {len(self.buffer)} segments ({total:.3f}s)")
        self.buffer = []

    def rewrite(self, text: str) -> str:
        lines = [line.rstrip('\r') for line in text.split('\n')]
        i = 0
        while i < len(lines):
            line = lines[i]

            if line.startswith('#EXTINF:'):
                duration = parse_extinf_duration(line)

                # Look ahead for the segment URI, skipping blanks and plain comments
                j = i + 1
                while j < len(lines) and (lines[j].strip() == '' or
                                          (lines[j].startswith('#') and not lines[j].startswith('#EXT'))):
                    j += 1

                if (duration is not None and j < len(lines) and not lines[j].startswith('#')
                        and not self.rewriter.is_proxied(lines[j])):
                    self.comments.extend(c for c in lines[i + 1:j] if c.strip())
                    self.buffer.append((duration, self.rewriter.absolute(lines[j]), line))
                    i = j + 1
                    if len(self.buffer) >= self.batch_size:
                        self.flush()
                    continue

                self.flush()
                self.output.append(line)
            elif line.strip() == '':
                # Blank lines inside a run would split it for no reason; the final one is kept
                if not self.buffer or i == len(lines) - 1:
                    self.flush()
                    self.output.append(line)
            else:
                self.flush()
                self.output.append(self.rewriter.rewrite_line(line))
            i += 1

        self.flush()
        return '\n'.join(self.output)
