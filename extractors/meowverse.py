import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

from config import (
    MEOWVERSE_MAIN_URL, MEOWVERSE_STREAM_URL, MEOWVERSE_USER_TOKEN, MEOWVERSE_VIA_PROXY,
    DETAILS_CACHE_TTL, STREAM_CACHE_TTL,
)
from extractors.base import ExtractorError, Quality, StreamDescriptor, Subtitle, proxy_url_builder
from services.session_bootstrap import BypassError, BypassTarget, SessionBootstrapManager
from services.upstream import UpstreamError, UpstreamFetcher
from utils.cache import TTLStore
from utils.cookies import CookieJar

logger = logging.getLogger(__name__)

_VIDEO_NOT_FOUND_RE = re.compile(r"Video ID not found!", re.IGNORECASE)

# Label fragments -> ISO 639-1, for tracks that only carry a display label
_LABEL_LANGUAGES = (
    ("english", "en"),
    ("hindi", "hi"),
    ("tamil", "ta"),
    ("telugu", "te"),
    ("malayalam", "ml"),
    ("kannada", "kn"),
    ("bengali", "bn"),
)


def infer_language(label: str) -> str:
    lowered = (label or "").lower()
    for fragment, code in _LABEL_LANGUAGES:
        if fragment in lowered:
            return code
    return ""


def is_caption_track(track: dict) -> bool:
    """Keeps caption/subtitle tracks; thumbnail sprites are published as VTT too and are dropped."""
    kind = str(track.get("kind") or "").lower()
    file = str(track.get("file") or "").lower()
    if "thumb" in kind:
        return False
    if "caption" in kind or "sub" in kind:
        return True
    return not kind and file.endswith((".vtt", ".srt"))


@dataclass(frozen=True)
class ResolvedPlaylist:
    """Outcome of the session dance: the playlist item plus the context its URLs need."""
    item: dict
    base_url: str
    referer: str
    cookie: str


class MeowVerseExtractor:
    """
    Stream resolution for the MeowVerse catalog.

    The catalog host sits behind an anti-bot challenge. A session cookie is bootstrapped first,
    then an optional audio-language POST and a play hash exchange move the session to the
    streaming host before its playlist endpoint answers.
    """

    name = "meowverse"

    def __init__(self, fetcher: UpstreamFetcher, sessions: SessionBootstrapManager, store: TTLStore,
                 main_url: str = MEOWVERSE_MAIN_URL, stream_url: str = MEOWVERSE_STREAM_URL,
                 user_token: str = MEOWVERSE_USER_TOKEN, via_proxy: bool = MEOWVERSE_VIA_PROXY):
        self.fetcher = fetcher
        self.sessions = sessions
        self.store = store
        self.main_url = main_url.rstrip('/')
        self.stream_url = stream_url.rstrip('/')
        self.user_token = user_token
        self.via_proxy = via_proxy
        self.target = BypassTarget(
            name=self.name,
            challenge_url=f"{self.main_url}/tv/p.php",
            headers={'X-Requested-With': 'XMLHttpRequest'},
        )

    def _headers(self, url: str, cookie: str, referer: str, **extra) -> dict:
        extra.setdefault('X-Requested-With', 'XMLHttpRequest')
        return self.fetcher.build_headers(url, referer=referer, cookie=cookie, extra=extra)

    async def _session_cookie(self) -> str:
        try:
            return await self.sessions.get_cookie(self.target, via_proxy=self.via_proxy)
        except BypassError as e:
            raise ExtractorError(str(e)) from e

    # --- details ---

    async def get_details(self, content_id: str) -> dict:
        cache_key = f"{self.name}:details:{content_id}"
        cached, found = self.store.get(cache_key)
        if found:
            logger.debug(f"[{self.name}] Details cache hit: {content_id}")
            return cached

        cookie = await self._session_cookie()
        url = f"{self.main_url}/post.php?id={content_id}&t={int(time.time())}"
        headers = self._headers(url, f"t_hash_t={cookie}; ott=nf; hd=on", f"{self.main_url}/tv/home")
        try:
            data = await self.fetcher.fetch_json(url, headers=headers)
        except UpstreamError as e:
            raise ExtractorError(f"Details lookup failed ({e.status})") from e
        if not isinstance(data, dict):
            raise ExtractorError("Details response was not an object")

        details = {
            "id": content_id,
            "title": data.get("title") or "",
            "description": data.get("desc") or "",
            "year": data.get("year") or "",
            "defaultLanguage": data.get("d_lang") or "",
            "audioTracks": self._audio_tracks(data.get("lang")),
        }
        self.store.set(cache_key, details, DETAILS_CACHE_TTL)
        return details

    @staticmethod
    def _audio_tracks(languages) -> list:
        # An explicit default entry maps to "no language POST"
        tracks = [{"name": "Default", "languageId": "", "isDefault": True}]
        seen = {""}
        for entry in languages if isinstance(languages, list) else []:
            if not isinstance(entry, dict):
                continue
            code = str(entry.get("s") or "").strip()
            if not code or code.lower() == "und" or code in seen:
                continue
            seen.add(code)
            tracks.append({"name": str(entry.get("l") or "").strip() or code, "languageId": code,
                           "isDefault": False})
        return tracks

    # --- stream ---

    async def _optional_step(self, jar: CookieJar, step: str, url: str, **kwargs) -> Optional[str]:
        """Session steps are best effort: a failed step is logged and the flow continues."""
        try:
            return await self.sessions.merge_step(jar, url, **kwargs)
        except (UpstreamError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ [{self.name}] {step} failed: {e}")
            return None

    async def _transfer_session(self, jar: CookieJar, episode_id: str, lang: str):
        referer = f"{self.main_url}/home"

        if lang:
            url = f"{self.main_url}/language.php"
            await self._optional_step(
                jar, "Language POST", url, method='POST', data=f"lang={lang}",
                headers=self._headers(url, "", referer, **{'Content-Type': 'application/x-www-form-urlencoded'}),
            )

        # Needed even for the default audio; without it the streaming host says "Video ID not found!"
        url = f"{self.main_url}/play.php"
        body = await self._optional_step(
            jar, "Play hash POST", url, method='POST', data=f"id={episode_id}",
            headers=self._headers(url, "", referer, **{'Content-Type': 'application/x-www-form-urlencoded'}),
        )
        hash_params = ""
        if body:
            try:
                play = json.loads(body)
                if isinstance(play, dict) and play.get("h"):
                    hash_params = f"&{play['h']}"
            except ValueError:
                logger.warning(f"[{self.name}] Play response was not JSON")

        if not hash_params:
            logger.warning(f"[{self.name}] No transfer hash; continuing anyway")
            return

        url = f"{self.stream_url}/play.php?id={episode_id}{hash_params}"
        await self._optional_step(jar, "Session transfer", url, headers=self._headers(url, "", referer),
                                  allow_redirects=False)

    async def _fetch_playlist(self, jar: CookieJar, episode_id: str, lang: str) -> ResolvedPlaylist:
        stamp = int(time.time())
        base_url = self.stream_url
        url = f"{base_url}/tv/playlist.php?id={episode_id}&t={lang}&tm={stamp}"
        text = await self.fetcher.fetch_text(url, headers=self._headers(url, jar.header(), f"{base_url}/home"))

        if _VIDEO_NOT_FOUND_RE.search(text):
            logger.warning(f"[{self.name}] Streaming host has no playlist for {episode_id}; trying catalog host")
            base_url = self.main_url
            url = f"{base_url}/tv/playlist.php?id={episode_id}&t={lang}&tm={stamp}"
            text = await self.fetcher.fetch_text(url, headers=self._headers(url, jar.header(), f"{base_url}/home"))

        try:
            playlist = json.loads(text)
        except ValueError as e:
            logger.warning(f"[{self.name}] Playlist was not JSON: {text[:500]}")
            raise ExtractorError("Playlist response was not JSON") from e

        if not isinstance(playlist, list) or not playlist or not isinstance(playlist[0], dict):
            raise ExtractorError("Playlist is empty")
        if not playlist[0].get("sources"):
            raise ExtractorError("Playlist has no sources")

        return ResolvedPlaylist(item=playlist[0], base_url=base_url, referer=f"{base_url}/", cookie=jar.header())

    async def resolve(self, content_id: str, episode_id: Optional[str] = None, lang: str = "") -> ResolvedPlaylist:
        episode_id = episode_id or content_id
        cache_key = f"{self.name}:stream:{episode_id}:{lang}"
        cached, found = self.store.get(cache_key)
        if found:
            logger.debug(f"[{self.name}] Stream cache hit: {episode_id}")
            return cached

        cookie = await self._session_cookie()
        jar = CookieJar(f"t_hash_t={cookie}; ott=nf; hd=on; user_token={self.user_token}")
        logger.info(f"🎬 [{self.name}] Resolving {episode_id} (audio: {lang or 'default'})")

        try:
            await self._transfer_session(jar, episode_id, lang)
            resolved = await self._fetch_playlist(jar, episode_id, lang)
        except UpstreamError as e:
            raise ExtractorError(f"Playlist lookup failed ({e.status})") from e

        self.store.set(cache_key, resolved, STREAM_CACHE_TTL)
        return resolved

    def _absolute_source(self, base_url: str, file: str) -> str:
        if file.startswith('http'):
            return file
        return f"{base_url}{file.replace('/tv/', '/')}"

    @staticmethod
    def _absolute_track(base_url: str, file: str) -> str:
        if file.startswith('//'):
            file = f"https:{file}"
        if file and not file.startswith('http'):
            file = f"{base_url}{file}"
        return file

    def describe(self, resolved: ResolvedPlaylist, proxy_base: str = "") -> StreamDescriptor:
        """Builds the proxied descriptor; URLs carry the session cookies since browsers cannot send them."""
        builder = proxy_url_builder(referer=resolved.referer, cookie=resolved.cookie, proxy_base=proxy_base)
        sources = [s for s in resolved.item.get("sources") or [] if isinstance(s, dict) and s.get("file")]
        if not sources:
            raise ExtractorError("Playlist has no sources")

        descriptor = StreamDescriptor(
            video_url=builder.wrap(self._absolute_source(resolved.base_url, str(sources[0]["file"])), kind="playlist"),
        )
        for source in sources:
            descriptor.qualities.append(Quality(
                url=builder.wrap(self._absolute_source(resolved.base_url, str(source["file"])), kind="playlist"),
                quality=source.get("label") or "Auto",
            ))

        tracks = resolved.item.get("tracks")
        for track in tracks if isinstance(tracks, list) else []:
            if not isinstance(track, dict) or not is_caption_track(track):
                continue
            url = self._absolute_track(resolved.base_url, str(track.get("file") or ""))
            if not url:
                continue
            raw_lang = str(track.get("srclang") or track.get("lang") or track.get("language") or "").strip()
            label = str(track.get("label") or track.get("name") or raw_lang or "Subtitles")
            descriptor.subtitles.append(Subtitle(
                url=builder.wrap(url, kind="seg"),
                language=raw_lang or infer_language(label) or "en",
                label=label,
            ))
        return descriptor

    async def get_stream(self, content_id: str, episode_id: Optional[str] = None, lang: str = "",
                         proxy_base: str = "") -> StreamDescriptor:
        return self.describe(await self.resolve(content_id, episode_id, lang), proxy_base=proxy_base)
