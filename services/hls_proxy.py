import asyncio
import logging
from dataclasses import replace

from aiohttp import web

from config import (
    GLOBAL_PROXIES, TRANSPORT_ROUTES, API_PASSWORD, ABSOLUTE_PROXY_URLS, HLS_PATH, PROXY_PATH,
    SNIFF_MAX_BYTES, CONCAT_MAX_SEGMENTS, SEGMENT_BATCHING, SEGMENT_BATCH_SIZE, check_password,
)
from extractors.base import ExtractorError
from extractors.generic import GenericHLSExtractor
from extractors.kartoons import KartoonsExtractor
from extractors.meowverse import MeowVerseExtractor
from services.manifest_rewriter import ManifestRewriter, RewriteContext
from services.session_bootstrap import PROXIED_SET_COOKIE, SessionBootstrapManager
from services.upstream import (
    CLIENT_CLOSED_REQUEST, RELAYED_RESPONSE_HEADERS, ProxyRequest, UpstreamError, UpstreamFetcher,
    is_abort_error,
)
from utils.cache import TTLStore
from utils.crypto import decrypt_kartoons, decrypt_token, looks_like_kartoons_token
from utils.sniffer import (
    PLAYLIST, SUBTITLE, SNIFF, classify, decode_probe, looks_like_error_page, looks_like_playlist,
)
from utils.subtitles import srt_to_vtt

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

CORS_HEADERS = {'Access-Control-Allow-Origin': '*'}

# Request headers a /proxy caller may pass through to the upstream API
FORWARDED_REQUEST_HEADERS = ('Accept', 'Accept-Language', 'Content-Type', 'Authorization', 'X-Requested-With',
                             'Origin', 'If-None-Match', 'If-Modified-Since')

EXPOSED_HEADERS = f"{PROXIED_SET_COOKIE}, Content-Length, Content-Range, Accept-Ranges, Location"

MANIFEST_CONTENT_TYPE = 'application/vnd.apple.mpegurl'
CLOSED_PLAYLIST_CACHE = 'public, max-age=14400'
BINARY_CACHE = 'public, max-age=3600'
CONCAT_CACHE = 'public, max-age=31536000'


def json_error(message: str, status: int, **extra) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status, headers=CORS_HEADERS)


class HLSProxy:
    """HLS/API proxy: manifest rewriting, segment pass-through and concat, provider stream resolution"""

    def __init__(self, fetcher: UpstreamFetcher = None, store: TTLStore = None, extractors: dict = None):
        self.fetcher = fetcher or UpstreamFetcher()
        # Shared by bypass cookies, provider details and resolved streams
        self.store = store or TTLStore()
        self.sessions = SessionBootstrapManager(self.fetcher, self.store)

        if extractors is None:
            extractors = {
                MeowVerseExtractor.name: MeowVerseExtractor(self.fetcher, self.sessions, self.store),
                KartoonsExtractor.name: KartoonsExtractor(self.fetcher),
            }
        self.extractors = extractors

    # --- helpers ---

    @staticmethod
    def _proxy_base(request) -> str:
        if not ABSOLUTE_PROXY_URLS:
            return ""
        # Detect the public scheme and host when running behind a reverse proxy
        scheme = request.headers.get('X-Forwarded-Proto', request.scheme)
        host = request.headers.get('X-Forwarded-Host', request.host)
        return f"{scheme}://{host}"

    @staticmethod
    def _denied(request):
        logger.warning(f"⛔ Access denied: Invalid or missing API Password. IP: {request.remote}")
        return json_error("Unauthorized: Invalid API Password", 401)

    @staticmethod
    def _relayed_headers(resp) -> dict:
        headers = {}
        for name in RELAYED_RESPONSE_HEADERS:
            if name in resp.headers:
                headers[name] = resp.headers[name]
        # The client session decompresses, so the upstream length no longer matches
        if 'Content-Encoding' in resp.headers:
            headers.pop('Content-Length', None)
        return headers

    def _rewriter(self, request, proxy_request: ProxyRequest, base_url: str = None) -> ManifestRewriter:
        return ManifestRewriter(RewriteContext.from_proxy_request(
            proxy_request, base_url=base_url, proxy_base=self._proxy_base(request),
        ))

    @staticmethod
    def _manifest_response(text: str, rewriter: ManifestRewriter) -> web.Response:
        rewritten = rewriter.rewrite(text)
        # A closed VOD playlist never changes
        cache_control = CLOSED_PLAYLIST_CACHE if '#EXT-X-ENDLIST' in rewritten else 'no-cache'
        return web.Response(text=rewritten, headers={
            'Content-Type': MANIFEST_CONTENT_TYPE,
            'Cache-Control': cache_control,
            **CORS_HEADERS,
        })

    async def _stream_body(self, request, resp, headers: dict, head: bytes = b"") -> web.StreamResponse:
        response = web.StreamResponse(status=resp.status, headers=headers)
        await response.prepare(request)
        try:
            if head:
                await response.write(head)
            async for chunk in resp.content.iter_chunked(8192):
                await response.write(chunk)
            await response.write_eof()
        except Exception as e:
            if not is_abort_error(e):
                raise
            # Players drop connections on every seek
            logger.info(f"ℹ️ Client disconnected from stream: {resp.url} ({e})")
        return response

    @staticmethod
    async def _read_probe(resp) -> bytes:
        """Reads at most SNIFF_MAX_BYTES + 1 bytes; anything further stays in the stream."""
        chunks = []
        size = 0
        async for chunk in resp.content.iter_chunked(65536):
            chunks.append(chunk)
            size += len(chunk)
            if size > SNIFF_MAX_BYTES:
                break
        return b"".join(chunks)

    def _binary_headers(self, resp, proxy_request: ProxyRequest) -> dict:
        headers = self._relayed_headers(resp)
        headers['Cache-Control'] = 'no-cache' if proxy_request.range_header else BINARY_CACHE
        headers['Vary'] = 'Range'
        headers.update(CORS_HEADERS)
        return headers

    # --- /hls ---

    async def handle_hls(self, request):
        """Manifest/segment proxy entry point"""
        if not check_password(request):
            return self._denied(request)

        try:
            if request.query.get('concat'):
                return await self.handle_concat(request)
            return await self._handle_hls(request)
        except UpstreamError as e:
            logger.warning(f"⚠️ Upstream error {e.status} for {e.url}: {e}")
            return json_error(str(e), e.status)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Upstream timed out: {request.query.get('url', '')[:200]}")
            return json_error("Upstream timed out", 504)
        except Exception as e:
            if is_abort_error(e):
                logger.info(f"ℹ️ Client aborted: {request.path_qs[:200]}")
                return json_error("aborted", CLIENT_CLOSED_REQUEST)
            logger.exception(f"❌ Unexpected error in HLS proxy: {e}")
            return json_error(f"Internal error: {e}", 500)

    async def _handle_hls(self, request):
        proxy_request = ProxyRequest.from_request(request)
        target = proxy_request.target_url
        if not target:
            return json_error("Missing 'url' parameter", 400)

        if proxy_request.decrypt_mode == 'kartoons' and looks_like_kartoons_token(target):
            plaintext = decrypt_kartoons(target)
            if plaintext is None:
                return json_error("Stream token could not be decrypted", 400)
            if looks_like_playlist(plaintext):
                # The token carried the playlist itself; there is no upstream base to resolve against
                logger.info("📜 Serving playlist carried inside a Kartoons token")
                return self._manifest_response(plaintext, self._rewriter(request, proxy_request, base_url=""))

        target = decrypt_token(target, proxy_request.decrypt_mode)
        if not target.lower().startswith(('http://', 'https://')):
            return json_error("Invalid target url", 400)

        headers = self.fetcher.headers_for(proxy_request, target)
        async with self.fetcher.open(target, method=request.method, headers=headers) as resp:
            if resp.status >= 400:
                preview = '' if request.method == 'HEAD' else (await resp.text(errors='replace'))[:500]
                logger.warning(f"⚠️ Upstream returned error {resp.status} for {target}")
                return json_error("Upstream fetch failed", resp.status, preview=preview)

            if request.method == 'HEAD':
                return web.Response(status=resp.status, headers=self._binary_headers(resp, proxy_request))

            content_type = resp.headers.get('Content-Type', '')
            kind = classify(target, content_type, resp.content_length, proxy_request.kind)

            if kind == SUBTITLE:
                text = (await resp.read()).decode('utf-8', errors='replace')
                return web.Response(text=srt_to_vtt(text), headers={
                    'Content-Type': 'text/vtt',
                    'Cache-Control': BINARY_CACHE,
                    **CORS_HEADERS,
                })

            if kind == PLAYLIST:
                text = (await resp.read()).decode('utf-8', errors='replace')
                if not looks_like_playlist(text):
                    logger.warning(f"⚠️ Expected a playlist from {target}, got {content_type or 'unknown type'}")
                    return json_error(f"Invalid M3U8 content (upstream {resp.status} {resp.reason})", 502,
                                      contentType=content_type, preview=text[:500])
                logger.info(f"📜 Rewriting manifest: {target[:120]}")
                return self._manifest_response(text, self._rewriter(request, proxy_request, base_url=target))

            headers = self._binary_headers(resp, proxy_request)
            if kind != SNIFF:
                logger.debug(f"▶️ Pass-through {kind}: {target[:120]}")
                return await self._stream_body(request, resp, headers)

            head = await self._read_probe(resp)
            if len(head) > SNIFF_MAX_BYTES:
                # Too large to be a manifest; the rest is streamed after what was already read
                return await self._stream_body(request, resp, headers, head=head)

            text = decode_probe(head)
            if looks_like_playlist(text):
                logger.info(f"🔎 Sniffed manifest without playlist metadata: {target[:120]}")
                return self._manifest_response(text, self._rewriter(request, proxy_request, base_url=target))
            if looks_like_error_page(text):
                logger.warning(f"⚠️ Upstream served an error page with {resp.status}: {target[:120]}")
                return json_error(f"Upstream returned an error page (upstream {resp.status})", 502,
                                  contentType=content_type, preview=text[:500])

            headers.pop('Content-Length', None)
            return web.Response(status=resp.status, body=head, headers=headers)

    async def handle_concat(self, request):
        """Fetches every member segment in parallel and answers with the bytes joined in order"""
        proxy_request = ProxyRequest.from_request(request)
        if not proxy_request.proxy_segments:
            return json_error("Segment proxying disabled", 400)

        urls = [u.strip() for u in request.query.get('concat', '').split('|') if u.strip()]
        if not urls:
            return json_error("Missing segments", 400)
        if len(urls) > CONCAT_MAX_SEGMENTS:
            return json_error("Too many segments", 400)

        urls = [decrypt_token(u, proxy_request.decrypt_mode) for u in urls]
        # A Range on the concat URL addresses the joined body, never the individual members
        member_request = replace(proxy_request, range_header=None)
        tasks = [
            asyncio.ensure_future(self.fetcher.fetch_bytes(url, headers=self.fetcher.headers_for(member_request, url)))
            for url in urls
        ]
        try:
            parts = await asyncio.gather(*tasks)
        except UpstreamError as e:
            logger.warning(f"⚠️ Concat member failed ({e.status}): {e.url}")
            return json_error(f"Concat failed: {e}", 502)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        logger.debug(f"🧩 Concatenated {len(parts)} segments")
        return web.Response(body=b"".join(parts), headers={
            'Content-Type': 'video/MP2T',
            'Cache-Control': CONCAT_CACHE,
            **CORS_HEADERS,
        })

    # --- /proxy ---

    def _proxy_headers(self, request, target: str) -> dict:
        query = request.query
        extra = {name: request.headers[name] for name in FORWARDED_REQUEST_HEADERS if name in request.headers}
        for name in ('api', 'caller'):
            if query.get(name):
                extra[name] = query[name]
        return self.fetcher.build_headers(
            target,
            referer=query.get('referer', ''),
            cookie=query.get('cookie', ''),
            user_agent=query.get('ua', ''),
            range_header=request.headers.get('Range'),
            extra=extra,
        )

    async def handle_proxy(self, request):
        """Opaque proxy for provider API calls (GET/POST/HEAD)"""
        if not check_password(request):
            return self._denied(request)

        target = decrypt_token((request.query.get('url') or '').strip())
        if not target.lower().startswith(('http://', 'https://')):
            return json_error("Missing or invalid 'url' parameter", 400)

        # POST bodies are streamed through, never buffered
        data = request.content if request.method == 'POST' and request.body_exists else None
        allow_redirects = request.query.get('redirect', '').lower() != 'manual'

        try:
            async with self.fetcher.open(target, method=request.method, headers=self._proxy_headers(request, target),
                                         data=data, allow_redirects=allow_redirects) as resp:
                if resp.status >= 400:
                    preview = '' if request.method == 'HEAD' else (await resp.text(errors='replace'))[:500]
                    logger.warning(f"⚠️ Upstream returned error {resp.status} for {target}")
                    return json_error("Upstream fetch failed", resp.status, preview=preview)

                headers = self._relayed_headers(resp)
                if 'Location' in resp.headers:
                    headers['Location'] = resp.headers['Location']
                headers['Access-Control-Expose-Headers'] = EXPOSED_HEADERS
                headers.update(CORS_HEADERS)

                if request.method == 'HEAD':
                    response = web.Response(status=resp.status, headers=headers)
                else:
                    response = web.StreamResponse(status=resp.status, headers=headers)

                # Browsers never expose Set-Cookie cross-origin
                for cookie in resp.headers.getall('Set-Cookie', []):
                    response.headers.add(PROXIED_SET_COOKIE, cookie)

                if request.method == 'HEAD':
                    return response

                await response.prepare(request)
                try:
                    async for chunk in resp.content.iter_chunked(8192):
                        await response.write(chunk)
                    await response.write_eof()
                except Exception as e:
                    if not is_abort_error(e):
                        raise
                    logger.info(f"ℹ️ Client disconnected from proxy response: {target[:120]}")
                return response

        except UpstreamError as e:
            logger.warning(f"⚠️ Proxy request failed: {e}")
            return json_error("Upstream fetch failed", e.status)
        except asyncio.TimeoutError:
            return json_error("Upstream timed out", 504)
        except Exception as e:
            if is_abort_error(e):
                logger.info(f"ℹ️ Client aborted: {target[:120]}")
                return json_error("aborted", CLIENT_CLOSED_REQUEST)
            logger.exception(f"❌ Unexpected error in generic proxy: {e}")
            return json_error(f"Internal error: {e}", 500)

    # --- /api ---

    async def handle_stream(self, request):
        """Resolves a provider stream into a StreamDescriptor whose URLs point back into this proxy"""
        if not check_password(request):
            return self._denied(request)

        query = request.query
        provider = query.get('provider', '').strip().lower()
        proxy_base = self._proxy_base(request)

        try:
            if provider == 'generic':
                extractor = GenericHLSExtractor(proxy_base=proxy_base)
                headers = {name: query[param] for param, name in
                           (('referer', 'Referer'), ('cookie', 'Cookie'), ('ua', 'User-Agent')) if query.get(param)}
                descriptor = extractor.extract(url=query.get('url'), token=query.get('token'), headers=headers,
                                               decrypt_mode=query.get('decrypt') or None)
            elif provider in self.extractors:
                content_id = query.get('id', '').strip()
                if not content_id:
                    return json_error("Missing 'id' parameter", 400)
                descriptor = await self.extractors[provider].get_stream(
                    content_id, query.get('episode') or None, query.get('lang', ''), proxy_base=proxy_base,
                )
            else:
                return json_error(f"Unknown provider: {provider or '(none)'}", 400)
        except ExtractorError as e:
            logger.warning(f"⚠️ [{provider}] Stream resolution failed: {e}")
            return json_error(f"stream unavailable: {e}", 503)
        except asyncio.TimeoutError:
            return json_error("stream unavailable: upstream timed out", 504)
        except Exception as e:
            logger.exception(f"❌ Unexpected error resolving {provider} stream: {e}")
            return json_error(f"Internal error: {e}", 500)

        return web.json_response(descriptor.to_dict(), headers=CORS_HEADERS)

    async def handle_details(self, request):
        """Title metadata and selectable audio languages for providers that publish them"""
        if not check_password(request):
            return self._denied(request)

        provider = request.query.get('provider', MeowVerseExtractor.name).strip().lower()
        content_id = request.query.get('id', '').strip()
        extractor = self.extractors.get(provider)
        if not hasattr(extractor, 'get_details'):
            return json_error(f"Provider has no details: {provider}", 400)
        if not content_id:
            return json_error("Missing 'id' parameter", 400)

        try:
            details = await extractor.get_details(content_id)
        except ExtractorError as e:
            logger.warning(f"⚠️ [{provider}] Details lookup failed: {e}")
            return json_error(f"details unavailable: {e}", 503)
        except asyncio.TimeoutError:
            return json_error("details unavailable: upstream timed out", 504)
        return web.json_response(details, headers=CORS_HEADERS)

    async def handle_options(self, request):
        """CORS preflight for every path"""
        headers = {
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Methods': 'GET, HEAD, POST, OPTIONS',
            'Access-Control-Allow-Headers': 'Range, Content-Type, Authorization, X-Requested-With, x-api-password',
            'Access-Control-Expose-Headers': EXPOSED_HEADERS,
            'Access-Control-Max-Age': '86400'
        }
        return web.Response(headers=headers)

    async def handle_api_info(self, request):
        """Version, enabled features, proxy routing summary and endpoint list"""
        info = {
            "proxy": "Stream Relay",
            "version": VERSION,
            "status": "✅ Working",
            "features": {
                "manifest_rewriting": True,
                "segment_batching": SEGMENT_BATCHING,
                "segment_batch_size": SEGMENT_BATCH_SIZE,
                "concat_max_segments": CONCAT_MAX_SEGMENTS,
                "subtitle_conversion": True,
                "password_protected": bool(API_PASSWORD),
            },
            "providers": ["generic", *self.extractors.keys()],
            "proxy_config": {
                "global_proxies": f"{len(GLOBAL_PROXIES)} proxies loaded",
                "transport_routes": f"{len(TRANSPORT_ROUTES)} routing rules configured",
                "routes": [{"url": route.fragment, "has_proxy": route.proxy is not None} for route in TRANSPORT_ROUTES]
            },
            "endpoints": {
                HLS_PATH: "Manifest/segment proxy - ?url=<URL>&referer=&cookie=&ua=&decrypt=&kind=&proxy_segments=",
                f"{HLS_PATH}?concat=": "Merged segments - ?concat=<url1>|<url2>...",
                PROXY_PATH: "Generic API proxy (GET/POST/HEAD) - ?url=<URL>&referer=&cookie=&ua=&api=&caller=&redirect=manual",
                "/api/stream": "Stream resolution - ?provider=<name>&id=<id>&episode=&lang=",
                "/api/details": "Title details - ?provider=meowverse&id=<id>",
                "/api/info": "JSON endpoint with server information"
            },
        }
        return web.json_response(info, headers=CORS_HEADERS)

    async def cleanup(self):
        """Resource cleanup"""
        try:
            await self.fetcher.close()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")
