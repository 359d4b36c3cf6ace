from utils.sniffer import (
    BINARY, PLAYLIST, SEGMENT, SNIFF, SUBTITLE, classify, decode_probe, looks_like_error_page, looks_like_playlist,
)


def test_playlist_by_url_and_content_type():
    assert classify("https://cdn.example/index.m3u8") == PLAYLIST
    assert classify("https://cdn.example/live", "application/vnd.apple.mpegurl") == PLAYLIST
    assert classify("https://cdn.example/live", "audio/x-mpegURL") == PLAYLIST


def test_forced_kind_wins_over_url_shape():
    assert classify("https://cdn.example/index.m3u8", kind="seg") == SEGMENT
    assert classify("https://cdn.example/blob", "application/octet-stream", kind="playlist") == PLAYLIST


def test_subtitles_win_over_everything():
    assert classify("https://cdn.example/en.srt", kind="seg") == SUBTITLE
    assert classify("https://cdn.example/track", "application/x-subrip") == SUBTITLE


def test_segment_urls_are_never_sniffed():
    for url in ("https://c/a.ts", "https://c/a.m4s", "https://c/v.mp4", "https://c/k.key", "https://c/segment/9"):
        assert classify(url, "text/plain", 10) == SEGMENT


def test_sniff_guards():
    assert classify("https://cdn.example/play", "text/plain", 50) == SNIFF
    assert classify("https://cdn.example/play", "", None) == SNIFF
    assert classify("https://cdn.example/blob", "application/octet-stream", 5_000_000) == BINARY
    assert classify("https://cdn.example/blob", "application/octet-stream", None) == BINARY
    assert classify("https://cdn.example/big", "text/plain", 5_000_000) == BINARY


def test_small_manifest_body_is_recognised():
    body = b"#EXTM3U\n#EXT-X-VERSION:3\n#EXTINF:4,\nsegment-1\n"
    assert len(body) < 64
    assert looks_like_playlist(decode_probe(body))


def test_error_pages():
    assert looks_like_error_page("<!DOCTYPE html><html><body>blocked</body></html>")
    assert looks_like_error_page("  Access Denied")
    assert looks_like_error_page('{"error": "forbidden"}')
    assert looks_like_error_page("Video ID not found!")
    assert not looks_like_error_page("#EXTM3U\n#EXTINF:4,\nerror.ts\n")
    assert not looks_like_error_page("WEBVTT\n\n00:00:01.000 --> 00:00:02.000\nError!")
    assert not looks_like_error_page(None)


def test_binary_probe_is_not_text():
    assert decode_probe(b"\x47\x00\x11\x10" * 100) is None
    assert decode_probe(b"\xff\xfe\xfd") is None
    assert decode_probe(b"#EXTM3U\n") == "#EXTM3U\n"
