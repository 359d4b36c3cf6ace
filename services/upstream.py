import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlparse

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector, ClientConnectionError, ClientPayloadError
from aiohttp_socks import ProxyConnector

from config import (
    GLOBAL_PROXIES, TRANSPORT_ROUTES, get_proxy_for_url, get_ssl_setting_for_url,
    DEFAULT_USER_AGENT, DEFAULT_REFERER, DEFAULT_COOKIE, BROWSER_EMULATION_HOSTS,
    UPSTREAM_TIMEOUT, UPSTREAM_CONNECT_TIMEOUT, STREAM_RESOLVE_TIMEOUTS,
)
from utils.sniffer import normalize_kind

logger = logging.getLogger(__name__)

# Status used when the downstream client went away (nginx convention)
CLIENT_CLOSED_REQUEST = 499

# Headers some hosts check before serving media to anything that is not a browser
BROWSER_EMULATION_HEADERS = {
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.9",
    "sec-ch-ua": '"Chromium";v="136", "Google Chrome";v="136", "Not.A/Brand";v="99"',
    "sec-ch-ua-mobile": "?0",
    "sec-ch-ua-platform": '"Windows"',
    "sec-fetch-dest": "empty",
    "sec-fetch-mode": "cors",
    "sec-fetch-site": "cross-site",
}

# Upstream response headers relayed unchanged on pass-through
RELAYED_RESPONSE_HEADERS = ('Content-Type', 'Content-Length', 'Content-Range', 'Accept-Ranges',
                            'Content-Disposition', 'Last-Modified', 'ETag')


class UpstreamError(Exception):
    """Non-2xx answer or transport failure from the origin host."""

    def __init__(self, status: int, url: str, message: str = "", content_type: str = "", preview: str = ""):
        self.status = status
        self.url = url
        self.content_type = content_type
        self.preview = preview
        super().__init__(message or f"Upstream returned {status} for {url}")


class ClientAborted(Exception):
    """The downstream client disconnected (seek, navigation) while we were serving it."""


def is_abort_error(exc: BaseException) -> bool:
    if isinstance(exc, (ClientAborted, ConnectionResetError, ClientPayloadError)):
        return True
    return 'aborted' in str(exc).lower()


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-attempt timeouts for calls that are slow to start.

    Only timeouts are retried: each attempt gets the next timeout in `timeouts`, with `backoff`
    seconds between attempts. Any other failure ends the call immediately.
    """
    timeouts: Tuple[float, ...] = STREAM_RESOLVE_TIMEOUTS
    backoff: float = 0.0

    @classmethod
    def single(cls, timeout: float = UPSTREAM_TIMEOUT) -> "RetryPolicy":
        return cls(timeouts=(timeout,))


@dataclass(frozen=True)
class ProxyRequest:
    """Forwarding context of one inbound proxy call."""
    target_url: str
    referer: str = ""
    cookie: str = ""
    user_agent: str = ""
    decrypt_mode: Optional[str] = None
    kind: Optional[str] = None
    proxy_segments: bool = True
    range_header: Optional[str] = None

    @classmethod
    def from_request(cls, request) -> "ProxyRequest":
        query = request.query
        return cls(
            target_url=(query.get('url') or '').strip(),
            referer=query.get('referer') or DEFAULT_REFERER,
            cookie=query.get('cookie') or DEFAULT_COOKIE,
            user_agent=query.get('ua') or '',
            decrypt_mode=(query.get('decrypt') or '').strip().lower() or None,
            kind=normalize_kind(query.get('kind')),
            proxy_segments=query.get('proxy_segments', 'true').lower() != 'false',
            range_header=request.headers.get('Range'),
        )


class UpstreamFetcher:
    """Outbound HTTP for the proxy: header assembly, session/proxy selection, error mapping."""

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, emulation_hosts=None):
        self.user_agent = user_agent
        self.emulation_hosts = list(BROWSER_EMULATION_HOSTS if emulation_hosts is None else emulation_hosts)

        # Shared session for direct traffic
        self.session = None

        # proxy_url -> ClientSession, one connection pool per upstream proxy
        self.proxy_sessions = {}

    async def _get_session(self):
        if self.session is None or self.session.closed:
            connector = TCPConnector(
                limit=0,  # Unlimited connections
                limit_per_host=0,
                keepalive_timeout=60,
                enable_cleanup_closed=True
            )
            self.session = ClientSession(
                timeout=ClientTimeout(total=UPSTREAM_TIMEOUT, connect=UPSTREAM_CONNECT_TIMEOUT),
                connector=connector,
                cookie_jar=aiohttp.DummyCookieJar(),
            )
        return self.session

    async def _get_proxy_session(self, url: str):
        """Get a session routed through the proxy configured for `url`, or the direct session."""
        proxy = get_proxy_for_url(url, TRANSPORT_ROUTES, GLOBAL_PROXIES)

        if proxy:
            cached_session = self.proxy_sessions.get(proxy)
            if cached_session is not None:
                if not cached_session.closed:
                    logger.debug(f"♻️ Reusing cached proxy session: {proxy}")
                    return cached_session
                del self.proxy_sessions[proxy]

            logger.info(f"🌍 Creating proxy session: {proxy}")
            try:
                connector = ProxyConnector.from_url(
                    proxy,
                    limit=0,
                    limit_per_host=0,
                    keepalive_timeout=60
                )
                session = ClientSession(
                    timeout=ClientTimeout(total=UPSTREAM_TIMEOUT, connect=UPSTREAM_CONNECT_TIMEOUT),
                    connector=connector,
                    cookie_jar=aiohttp.DummyCookieJar(),
                )
                self.proxy_sessions[proxy] = session
                return session
            except Exception as e:
                logger.warning(f"⚠️ Failed to create proxy connector: {e}, falling back to direct")

        return await self._get_session()

    def wants_browser_headers(self, url: str) -> bool:
        host = urlparse(url).netloc.lower()
        return any(fragment.lower() in host for fragment in self.emulation_hosts)

    def build_headers(self, url: str, referer: str = "", cookie: str = "", user_agent: str = "",
                      range_header: Optional[str] = None, extra: Optional[dict] = None) -> dict:
        """Assembles outbound headers: spoofed UA, provider Referer/Cookie, browser emulation, Range."""
        headers = {}
        if self.wants_browser_headers(url):
            headers.update(BROWSER_EMULATION_HEADERS)
        if extra:
            headers.update(extra)

        headers['User-Agent'] = user_agent or self.user_agent
        if referer:
            headers['Referer'] = referer
        if cookie:
            headers['Cookie'] = cookie
        # Range is forwarded verbatim; players rely on it for seeking
        if range_header:
            headers['Range'] = range_header
        return headers

    def headers_for(self, proxy_request: ProxyRequest, url: Optional[str] = None) -> dict:
        return self.build_headers(
            url or proxy_request.target_url,
            referer=proxy_request.referer,
            cookie=proxy_request.cookie,
            user_agent=proxy_request.user_agent,
            range_header=proxy_request.range_header,
        )

    @asynccontextmanager
    async def open(self, url: str, method: str = 'GET', headers: Optional[dict] = None, data=None,
                   allow_redirects: bool = True, timeout: Optional[float] = None, direct: bool = False):
        """
        Opens an upstream response. Transport failures become UpstreamError(502); the body is
        left unread so callers can stream it. The response is released on exit.
        """
        session = await self._get_session() if direct else await self._get_proxy_session(url)
        kwargs = {}
        if get_ssl_setting_for_url(url, TRANSPORT_ROUTES):
            kwargs['ssl'] = False
        if timeout is not None:
            kwargs['timeout'] = ClientTimeout(total=timeout)

        try:
            resp = await session.request(method, url, headers=headers or {}, data=data,
                                         allow_redirects=allow_redirects, **kwargs)
        except asyncio.TimeoutError:
            raise
        except ClientConnectionError as e:
            raise UpstreamError(502, url, f"Upstream connection failed: {e}") from e

        try:
            yield resp
        finally:
            resp.release()

    async def fetch_bytes(self, url: str, headers: Optional[dict] = None, **kwargs) -> bytes:
        async with self.open(url, headers=headers, **kwargs) as resp:
            if resp.status >= 400:
                raise UpstreamError(resp.status, url, content_type=resp.headers.get('Content-Type', ''))
            return await resp.read()

    async def fetch_text(self, url: str, headers: Optional[dict] = None, **kwargs) -> str:
        async with self.open(url, headers=headers, **kwargs) as resp:
            text = await resp.text(errors='replace')
            if resp.status >= 400:
                raise UpstreamError(resp.status, url, preview=text[:200])
            return text

    async def fetch_json(self, url: str, headers: Optional[dict] = None, policy: Optional[RetryPolicy] = None,
                         **kwargs):
        """GET a JSON document, retrying only on timeout according to `policy`."""
        policy = policy or RetryPolicy.single()
        last_error = None
        for attempt, timeout in enumerate(policy.timeouts, start=1):
            try:
                async with self.open(url, headers=headers, timeout=timeout, **kwargs) as resp:
                    if resp.status >= 400:
                        body = await resp.text(errors='replace')
                        raise UpstreamError(resp.status, url, preview=body[:200])
                    return await resp.json(content_type=None)
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"⏱️ Timeout after {timeout}s on attempt {attempt}/{len(policy.timeouts)}: {url}")
                if attempt < len(policy.timeouts) and policy.backoff:
                    await asyncio.sleep(policy.backoff)
        raise UpstreamError(504, url, f"Timed out after {len(policy.timeouts)} attempts") from last_error

    async def close(self):
        """Resource cleanup"""
        if self.session and not self.session.closed:
            await self.session.close()

        for session in list(self.proxy_sessions.values()):
            if session and not session.closed:
                await session.close()
        self.proxy_sessions.clear()
