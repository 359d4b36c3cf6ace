import logging
from urllib.parse import quote

from config import KARTOONS_API_URL, HLS_PATH
from extractors.base import ExtractorError, Quality, StreamDescriptor, proxy_url_builder
from services.upstream import RetryPolicy, UpstreamError, UpstreamFetcher
from utils.crypto import decrypt_kartoons, first_line

logger = logging.getLogger(__name__)


class KartoonsExtractor:
    """
    Kartoons links API. Each link is a scheme-B token that opens either to a playlist URL or,
    for some titles, to the playlist text itself.
    """

    name = "kartoons"

    def __init__(self, fetcher: UpstreamFetcher, api_url: str = KARTOONS_API_URL, policy: RetryPolicy = None):
        self.fetcher = fetcher
        self.api_url = api_url.rstrip('/')
        # Short first try, one longer retry: the API is often slow to wake up
        self.policy = policy or RetryPolicy()

    def links_url(self, episode_id: str) -> str:
        if episode_id.startswith('mov-'):
            return f"{self.api_url}/api/movies/{quote(episode_id[len('mov-'):], safe='')}/links"
        if episode_id.startswith('ep-'):
            return f"{self.api_url}/api/shows/episode/{quote(episode_id[len('ep-'):], safe='')}/links"
        raise ExtractorError(f"Unknown Kartoons id format: {episode_id}")

    async def get_stream(self, content_id: str, episode_id: str = None, lang: str = "",
                         proxy_base: str = "") -> StreamDescriptor:
        url = self.links_url(episode_id or content_id)
        try:
            data = await self.fetcher.fetch_json(url, policy=self.policy)
        except UpstreamError as e:
            raise ExtractorError(f"Links lookup failed ({e.status})") from e

        links = ((data or {}).get("data") or {}).get("links") if isinstance(data, dict) else None
        if not isinstance(links, list) or not links:
            raise ExtractorError("No stream links")

        builder = proxy_url_builder(proxy_base=proxy_base)
        for link in links:
            token = "".join(str((link or {}).get("url") or "").split())
            if not token:
                continue

            plaintext = decrypt_kartoons(token)
            if not plaintext:
                continue

            if plaintext.lstrip().startswith('#EXTM3U'):
                # The proxy opens the token again and serves the playlist text itself
                video_url = (f"{proxy_base}{HLS_PATH}?url={quote(token, safe='')}"
                             f"&decrypt=kartoons&kind=playlist")
            elif plaintext.strip().startswith('http'):
                video_url = builder.wrap(first_line(plaintext), kind="playlist")
            else:
                logger.debug(f"[{self.name}] Skipping link with unexpected plaintext")
                continue

            logger.info(f"🎬 [{self.name}] Resolved {episode_id or content_id}")
            return StreamDescriptor(video_url=video_url, qualities=[Quality(url=video_url)])

        raise ExtractorError("No decryptable stream link")
