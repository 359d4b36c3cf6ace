import logging
from typing import Optional

from extractors.base import ExtractorError, Quality, StreamDescriptor, Subtitle, proxy_url_builder
from utils.crypto import ENC2_PREFIX, decrypt_inline

logger = logging.getLogger(__name__)


class GenericHLSExtractor:
    """
    Turns a raw provider stream (URL or obfuscated token, plus the headers the host wants)
    into a StreamDescriptor whose URLs all go through the proxy.
    """

    def __init__(self, proxy_base: str = ""):
        self.proxy_base = proxy_base

    def _builder(self, headers: dict, decrypt_mode: Optional[str]):
        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        return proxy_url_builder(
            referer=lowered.get("referer", ""),
            cookie=lowered.get("cookie", ""),
            user_agent=lowered.get("user-agent", ""),
            decrypt_mode=decrypt_mode,
            proxy_base=self.proxy_base,
        )

    def extract(self, url: Optional[str] = None, token: Optional[str] = None, headers: Optional[dict] = None,
                decrypt_mode: Optional[str] = None, subtitles=None, qualities=None) -> StreamDescriptor:
        """
        `token` wins over `url`. enc2 tokens are opened here; Kartoons tokens (no prefix) are
        passed to the proxy with decrypt=kartoons so it can open them on fetch.
        """
        target = (token or url or "").strip()
        if not target:
            raise ExtractorError("Missing stream url or token")

        if target.startswith(ENC2_PREFIX):
            opened = decrypt_inline(target)
            if opened == target:
                raise ExtractorError("Stream token could not be decrypted")
            target = opened
        elif token and not target.startswith("http"):
            decrypt_mode = decrypt_mode or "kartoons"

        builder = self._builder(headers, decrypt_mode)
        video_url = builder.wrap(target, kind="playlist")

        descriptor = StreamDescriptor(video_url=video_url)
        for sub in subtitles or []:
            sub_url = decrypt_inline(str(sub.get("url") or ""))
            if sub_url:
                descriptor.subtitles.append(Subtitle(
                    url=builder.wrap(sub_url, kind="seg"),
                    language=sub.get("language") or "en",
                    label=sub.get("label") or "Subtitles",
                ))
        for quality in qualities or []:
            q_url = decrypt_inline(str(quality.get("url") or ""))
            if q_url:
                descriptor.qualities.append(Quality(url=builder.wrap(q_url, kind="playlist"),
                                                    quality=quality.get("quality") or "Auto"))

        logger.info(f"🎯 Resolved generic stream -> {video_url[:120]}")
        return descriptor
