import re

_NEWLINES_RE = re.compile(r"\r\n|\r|\n")
_SRT_TIMESTAMP_RE = re.compile(r"(\d{2}):(\d{2}):(\d{2}),(\d{3})")


def srt_to_vtt(srt_text: str) -> str:
    """Converts SubRip text to WebVTT. Text that is already WebVTT only gets its line endings normalized."""
    body = _NEWLINES_RE.sub("\n", srt_text.lstrip("\ufeff"))
    if body.startswith("WEBVTT"):
        return body
    body = _SRT_TIMESTAMP_RE.sub(r"\1:\2:\3.\4", body)
    return "WEBVTT\n\n" + body.strip()
