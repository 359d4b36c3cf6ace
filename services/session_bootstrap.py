import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from config import BYPASS_COOKIE_TTL, BYPASS_MAX_RETRIES, BYPASS_RETRY_DELAY
from services.upstream import UpstreamError, UpstreamFetcher
from utils.cache import TTLStore
from utils.cookies import CookieJar, extract_cookie

logger = logging.getLogger(__name__)

# Header carrying upstream Set-Cookie when the challenge went through another proxy hop
PROXIED_SET_COOKIE = 'X-Proxied-Set-Cookie'


class BypassError(Exception):
    """The challenge loop ran out of attempts without obtaining a session cookie."""


class SessionState(str, Enum):
    EMPTY = "empty"
    BYPASSING = "bypassing"
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class BypassTarget:
    """An upstream host gated by a challenge POST that hands out a session cookie."""
    name: str
    challenge_url: str
    cookie_name: str = "t_hash_t"
    success_marker: str = '"r":"n"'
    referer: str = ""
    headers: Optional[dict] = None


@dataclass(frozen=True)
class SessionCookie:
    value: str
    acquired_at: float


class SessionBootstrapManager:
    """
    Acquires and caches anti-bot session cookies.

    Cookies are cached per target and per network path (direct or through the upstream proxy),
    since both identities can see different challenges. Concurrent callers that find the cache
    empty may each run the challenge loop; the last writer wins.
    """

    def __init__(self, fetcher: UpstreamFetcher, store: TTLStore, ttl: float = BYPASS_COOKIE_TTL,
                 max_retries: int = BYPASS_MAX_RETRIES, retry_delay: float = BYPASS_RETRY_DELAY):
        self.fetcher = fetcher
        self.store = store
        self.ttl = ttl
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._in_flight = set()
        # Keys that held a cookie at some point; an evicted one reads as EXPIRED, not EMPTY
        self._acquired = set()

    @staticmethod
    def cache_key(target: BypassTarget, via_proxy: bool = False) -> str:
        return f"bypass:{target.name}:{'proxy' if via_proxy else 'direct'}"

    def cached(self, target: BypassTarget, via_proxy: bool = False) -> Optional[SessionCookie]:
        value, found = self.store.get(self.cache_key(target, via_proxy))
        return value if found else None

    def state(self, target: BypassTarget, via_proxy: bool = False) -> SessionState:
        key = self.cache_key(target, via_proxy)
        if self.cached(target, via_proxy):
            return SessionState.ACTIVE
        if key in self._in_flight:
            return SessionState.BYPASSING
        if key in self._acquired:
            return SessionState.EXPIRED
        return SessionState.EMPTY

    def invalidate(self, target: BypassTarget, via_proxy: bool = False):
        key = self.cache_key(target, via_proxy)
        self.store.delete(key)
        self._acquired.discard(key)

    async def get_cookie(self, target: BypassTarget, via_proxy: bool = False) -> str:
        """Returns a live session cookie value, running the challenge loop if none is cached."""
        cookie = self.cached(target, via_proxy)
        if cookie:
            logger.debug(f"🍪 [{target.name}] Using cached session cookie")
            return cookie.value

        key = self.cache_key(target, via_proxy)
        self._in_flight.add(key)
        try:
            value = await self._bypass(target, via_proxy)
        finally:
            self._in_flight.discard(key)

        self.store.set(key, SessionCookie(value=value, acquired_at=time.time()), self.ttl)
        self._acquired.add(key)
        logger.info(f"✅ [{target.name}] Bypass successful, cookie cached for {self.ttl / 3600:.1f}h")
        return value

    def _challenge_headers(self, target: BypassTarget) -> dict:
        headers = dict(target.headers or {})
        headers.update({
            'Content-Type': 'application/x-www-form-urlencoded',
            'Cache-Control': 'no-cache, no-store, must-revalidate',
            'Pragma': 'no-cache',
            'Expires': '0',
        })
        if target.referer:
            headers['Referer'] = target.referer
        return self.fetcher.build_headers(target.challenge_url, extra=headers,
                                          user_agent=headers.get('User-Agent', ''))

    async def _attempt(self, target: BypassTarget, via_proxy: bool) -> Optional[str]:
        stamp = int(time.time() * 1000)
        # Cache buster: a cached answer would come back without Set-Cookie
        separator = '&' if '?' in target.challenge_url else '?'
        url = f"{target.challenge_url}{separator}_={stamp}"

        async with self.fetcher.open(url, method='POST', headers=self._challenge_headers(target),
                                     data=f"t={stamp}", direct=not via_proxy) as resp:
            body = await resp.text(errors='replace')
            set_cookie = list(resp.headers.getall('Set-Cookie', []))
            if via_proxy:
                set_cookie = list(resp.headers.getall(PROXIED_SET_COOKIE, [])) + set_cookie

        if target.success_marker not in body:
            return None
        return extract_cookie(set_cookie, target.cookie_name)

    async def _bypass(self, target: BypassTarget, via_proxy: bool) -> str:
        logger.info(f"🔐 [{target.name}] Starting bypass ({'proxied' if via_proxy else 'direct'})...")
        for attempt in range(1, self.max_retries + 1):
            try:
                value = await self._attempt(target, via_proxy)
            except (UpstreamError, asyncio.TimeoutError) as e:
                logger.warning(f"⚠️ [{target.name}] Bypass attempt {attempt} failed: {e}")
                value = None

            if value:
                return value

            logger.info(f"[{target.name}] Bypass attempt {attempt}/{self.max_retries}...")
            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay)

        raise BypassError(f"Bypass failed for {target.name} after {self.max_retries} attempts")

    async def merge_step(self, jar: CookieJar, url: str, method: str = 'GET', data=None,
                         headers: Optional[dict] = None, allow_redirects: bool = True) -> str:
        """
        Runs one session step (language POST, session transfer GET, ...) with the jar's cookies
        and merges whatever Set-Cookie the host answers with. Returns the response body.
        """
        request_headers = dict(headers or {})
        request_headers['Cookie'] = jar.header()
        async with self.fetcher.open(url, method=method, headers=request_headers, data=data,
                                     allow_redirects=allow_redirects) as resp:
            jar.merge(resp.headers.getall('Set-Cookie', []))
            logger.debug(f"[session] {method} {url} -> {resp.status}")
            return await resp.text(errors='replace')
