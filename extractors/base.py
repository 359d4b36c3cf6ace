"""
Types shared by the stream extractors.

Providers answer with loosely shaped JSON; extractors validate it at the boundary and hand the
proxy a StreamDescriptor whose URLs already point back into this proxy.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional

from services.manifest_rewriter import ManifestRewriter, RewriteContext


class ExtractorError(Exception):
    """Raised when a provider cannot resolve a playable stream"""
    pass


@dataclass
class Subtitle:
    url: str
    language: str = "en"
    label: str = "Subtitles"

    def to_dict(self):
        return {"url": self.url, "language": self.language, "label": self.label}


@dataclass
class Quality:
    url: str
    quality: str = "Auto"

    def to_dict(self):
        return {"quality": self.quality, "url": self.url}


@dataclass
class StreamDescriptor:
    video_url: str
    subtitles: list[Subtitle] = field(default_factory=list)
    qualities: list[Quality] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)

    def to_dict(self):
        return {
            "videoUrl": self.video_url,
            "subtitles": [s.to_dict() for s in self.subtitles],
            "qualities": [q.to_dict() for q in self.qualities],
            "headers": self.headers,
        }


def proxy_url_builder(referer: str = "", cookie: str = "", user_agent: str = "",
                      decrypt_mode: Optional[str] = None, proxy_base: str = "") -> ManifestRewriter:
    """A rewriter with no manifest base, used to turn provider URLs into proxy URLs."""
    return ManifestRewriter(RewriteContext(
        base_url="",
        referer=referer,
        cookie=cookie,
        user_agent=user_agent,
        decrypt_mode=decrypt_mode,
        proxy_base=proxy_base,
    ))
