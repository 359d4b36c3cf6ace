from urllib.parse import parse_qs, urlsplit

from services.manifest_rewriter import ManifestRewriter, RewriteContext, parse_extinf_duration

BASE = "https://cdn.example/path/index.m3u8"
SUFFIX = "referer=https%3A%2F%2Fref.example%2F&cookie=hd%3Don"


def rewriter(**kwargs):
    params = dict(base_url=BASE, referer="https://ref.example/", cookie="hd=on", batch_segments=False)
    params.update(kwargs)
    return ManifestRewriter(RewriteContext(**params))


def media_playlist(*durations, extra_tags=()):
    lines = ["#EXTM3U", "#EXT-X-TARGETDURATION:4", "#EXT-X-MEDIA-SEQUENCE:0", *extra_tags]
    for i, duration in enumerate(durations, start=1):
        lines += [f"#EXTINF:{duration},", f"s{i}.ts"]
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


def concat_members(line):
    return parse_qs(urlsplit(line).query)["concat"][0].split("|")


def test_encrypted_key_uri_is_decrypted_and_wrapped(make_enc2):
    token = make_enc2("https://cdn.example/key.bin")
    line = f'#EXT-X-KEY:METHOD=AES-128,URI="{token}"'
    assert rewriter().rewrite_line(line) == (
        f'#EXT-X-KEY:METHOD=AES-128,URI="/hls?url=https%3A%2F%2Fcdn.example%2Fkey.bin&kind=seg&{SUFFIX}"'
    )


def test_relative_segment_is_resolved_and_wrapped():
    assert rewriter().rewrite_line("seg001.ts") == (
        f"/hls?url=https%3A%2F%2Fcdn.example%2Fpath%2Fseg001.ts&kind=seg&{SUFFIX}"
    )


def test_variant_and_media_uris_are_playlists():
    rw = rewriter()
    assert rw.rewrite_line("hi/index.m3u8") == (
        f"/hls?url=https%3A%2F%2Fcdn.example%2Fpath%2Fhi%2Findex.m3u8&kind=playlist&{SUFFIX}"
    )
    media = rw.rewrite_line('#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="a",NAME="en",URI="audio/en.m3u8"')
    assert f'URI="/hls?url=https%3A%2F%2Fcdn.example%2Fpath%2Faudio%2Fen.m3u8&kind=playlist&{SUFFIX}"' in media


def test_unquoted_uri_attribute():
    assert rewriter().rewrite_line("#EXT-X-MAP:URI=init.mp4,BYTERANGE=100@0") == (
        f"#EXT-X-MAP:URI=/hls?url=https%3A%2F%2Fcdn.example%2Fpath%2Finit.mp4&kind=seg&{SUFFIX},BYTERANGE=100@0"
    )


def test_relative_forms_resolve_against_manifest_url():
    rw = rewriter()
    assert rw.resolve("/root/a.ts") == "https://cdn.example/root/a.ts"
    assert rw.resolve("../up.ts") == "https://cdn.example/up.ts"
    assert rw.resolve("?v=2") == "https://cdn.example/path/index.m3u8?v=2"
    assert rw.resolve("https://other.example/x.ts") == "https://other.example/x.ts"


def test_proxied_references_pass_through():
    rw = rewriter(proxy_base="https://relay.example")
    for line in ("/hls?url=abc&kind=seg", "/proxy?url=abc", "https://relay.example/hls?url=abc&kind=seg"):
        assert rw.rewrite_line(line) == line
    tag = '#EXT-X-KEY:METHOD=AES-128,URI="/hls?url=k&kind=seg"'
    assert rw.rewrite_line(tag) == tag


def test_structure_is_preserved_line_for_line():
    text = media_playlist(4.0, 4.0)
    out = rewriter().rewrite(text)
    before, after = text.split("\n"), out.split("\n")
    assert len(before) == len(after)
    for original, rewritten in zip(before, after):
        if original.startswith("#") or not original:
            assert original == rewritten


def test_rewrite_is_idempotent(make_enc2):
    text = "\n".join([
        "#EXTM3U",
        f'#EXT-X-KEY:METHOD=AES-128,URI="{make_enc2("https://cdn.example/key.bin")}"',
        "#EXT-X-MAP:URI=init.mp4",
        "#EXTINF:4.0,",
        "../seg1.ts",
        "#EXTINF:4.0,",
        "/abs/seg2.ts",
        "",
        "#EXT-X-ENDLIST",
    ])
    for rw in (rewriter(), rewriter(batch_segments=True)):
        once = rw.rewrite(text)
        assert rw.rewrite(once) == once


def test_proxy_segments_disabled_leaves_segments_bare():
    rw = rewriter(proxy_segments=False, batch_segments=True)
    out = rw.rewrite("#EXTM3U\n#EXTINF:4,\nseg1.ts\n#EXTINF:4,\nseg2.ts\nlow/index.m3u8\n").split("\n")
    assert out[2] == "https://cdn.example/path/seg1.ts"
    assert out[4] == "https://cdn.example/path/seg2.ts"
    assert out[5] == (
        f"/hls?url=https%3A%2F%2Fcdn.example%2Fpath%2Flow%2Findex.m3u8&kind=playlist&{SUFFIX}&proxy_segments=false"
    )


def test_decrypt_mode_is_forwarded():
    rw = rewriter(decrypt_mode="kartoons")
    assert rw.rewrite_line("seg.ts").endswith(f"&{SUFFIX}&decrypt=kartoons")


def test_batching_merges_adjacent_segments():
    out = rewriter(batch_segments=True).rewrite(media_playlist(4.0, 4.0, 2.5)).split("\n")
    assert out[:3] == ["#EXTM3U", "#EXT-X-TARGETDURATION:4", "#EXT-X-MEDIA-SEQUENCE:0"]
    assert out[3] == "#EXTINF:10.5,"
    assert out[4].startswith("/hls?concat=")
    assert out[4].endswith(SUFFIX)
    assert concat_members(out[4]) == [f"https://cdn.example/path/s{i}.ts" for i in (1, 2, 3)]
    assert out[5] == "#EXT-X-ENDLIST"


def test_batched_duration_has_no_float_drift():
    out = rewriter(batch_segments=True).rewrite(media_playlist(*([0.1] * 10))).split("\n")
    assert abs(parse_extinf_duration(out[3]) - 1.0) < 1e-5
    assert out[3] == "#EXTINF:1.0,"


def test_batches_are_capped():
    out = rewriter(batch_segments=True).rewrite(media_playlist(*([4.0] * 12)))
    concat_lines = [line for line in out.split("\n") if line.startswith("/hls?concat=")]
    assert [len(concat_members(line)) for line in concat_lines] == [10, 2]
    assert "#EXTINF:40.0," in out and "#EXTINF:8.0," in out


def test_single_segment_is_never_concatenated():
    out = rewriter(batch_segments=True).rewrite(media_playlist(4.0)).split("\n")
    assert out[3] == "#EXTINF:4.0,"
    assert out[4] == f"/hls?url=https%3A%2F%2Fcdn.example%2Fpath%2Fs1.ts&kind=seg&{SUFFIX}"
    assert "concat=" not in "\n".join(out)


def test_key_or_discontinuity_disables_batching():
    for tag in ('#EXT-X-KEY:METHOD=AES-128,URI="https://cdn.example/k"', "#EXT-X-DISCONTINUITY"):
        out = rewriter(batch_segments=True).rewrite(media_playlist(4.0, 4.0, 4.0, extra_tags=[tag]))
        assert "concat=" not in out
        assert out.count("kind=seg") >= 3


def test_other_tags_split_batches_in_order():
    text = "\n".join([
        "#EXTM3U",
        "#EXTINF:4,", "a.ts",
        "#EXTINF:4,", "b.ts",
        "#EXT-X-PROGRAM-DATE-TIME:2026-01-01T00:00:00Z",
        "#EXTINF:4,", "c.ts",
        "#EXTINF:4,", "d.ts",
    ])
    out = rewriter(batch_segments=True).rewrite(text).split("\n")
    assert out[1] == "#EXTINF:8.0,"
    assert concat_members(out[2])[-1] == "https://cdn.example/path/b.ts"
    assert out[3] == "#EXT-X-PROGRAM-DATE-TIME:2026-01-01T00:00:00Z"
    assert concat_members(out[5]) == ["https://cdn.example/path/c.ts", "https://cdn.example/path/d.ts"]


def test_comments_inside_a_run_are_kept():
    text = "#EXTM3U\n#EXTINF:4,\n# first\nseg1.ts\n#EXTINF:4,\n# second\nseg2.ts\n"
    out = rewriter(batch_segments=True).rewrite(text).split("\n")
    assert out[:3] == ["#EXTM3U", "# first", "# second"]
    assert out[3] == "#EXTINF:8.0,"
    assert concat_members(out[4]) == ["https://cdn.example/path/seg1.ts", "https://cdn.example/path/seg2.ts"]


def test_open_playlist_keeps_trailing_newline():
    text = "#EXTM3U\n#EXTINF:4,\nseg1.ts\n#EXTINF:4,\nseg2.ts\n"
    out = rewriter(batch_segments=True).rewrite(text)
    assert out.endswith("\n")
    assert out.count("\n") == 3
