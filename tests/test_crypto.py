import base64

from utils.crypto import (
    decrypt_enc2, decrypt_inline, decrypt_kartoons, decrypt_token, looks_like_kartoons_token, b64url_to_bytes,
)


def test_enc2_round_trip(make_enc2):
    token = make_enc2("https://cdn.example/key.bin")
    assert decrypt_enc2(token) == "https://cdn.example/key.bin"


def test_enc2_value_without_prefix_is_untouched():
    assert decrypt_enc2("https://cdn.example/a.ts") == "https://cdn.example/a.ts"


def test_enc2_tampered_tag_is_rejected(make_enc2):
    token = make_enc2("https://cdn.example/key.bin")
    blob = bytearray(b64url_to_bytes(token[len("enc2:"):]))
    blob[-1] ^= 0x01
    tampered = "enc2:" + base64.urlsafe_b64encode(bytes(blob)).decode()
    assert decrypt_enc2(tampered) is None


def test_enc2_wrong_secret_is_rejected(make_enc2):
    assert decrypt_enc2(make_enc2("https://cdn.example/x", secret="other")) is None


def test_enc2_short_blob_is_rejected():
    short = "enc2:" + base64.urlsafe_b64encode(b"\x00" * 28).decode()
    assert decrypt_enc2(short) is None
    assert decrypt_enc2("enc2:!!!") is None


def test_kartoons_round_trip(make_kartoons_token):
    token = make_kartoons_token("https://stream.example/master.m3u8")
    assert decrypt_kartoons(token) == "https://stream.example/master.m3u8"


def test_kartoons_tolerates_invalid_padding(make_kartoons_token):
    # 16 bytes ending in '3' (0x33) is not valid PKCS#7; the plaintext comes back unstripped
    token = make_kartoons_token("https://a.b/x.m3", padded=False)
    assert decrypt_kartoons(token) == "https://a.b/x.m3"


def test_kartoons_short_blob_is_rejected():
    assert decrypt_kartoons(base64.urlsafe_b64encode(b"\x01" * 16).decode()) is None
    assert decrypt_kartoons("") is None


def test_inline_whole_token_keeps_first_line(make_enc2):
    token = make_enc2("https://cdn.example/a.ts\nignored")
    assert decrypt_inline(token) == "https://cdn.example/a.ts"


def test_inline_replaces_embedded_tokens(make_enc2):
    token = make_enc2("https://cdn.example/key.bin")
    line = f'#EXT-X-KEY:METHOD=AES-128,URI="{token}",IV=0x1'
    assert decrypt_inline(line) == '#EXT-X-KEY:METHOD=AES-128,URI="https://cdn.example/key.bin",IV=0x1'


def test_inline_leaves_undecryptable_tokens():
    assert decrypt_inline("enc2:AAAA") == "enc2:AAAA"


def test_token_kartoons_mode_requires_http_plaintext(make_kartoons_token):
    url_token = make_kartoons_token("https://stream.example/master.m3u8")
    assert decrypt_token(url_token, "kartoons") == "https://stream.example/master.m3u8"
    # Without the mode, bare blobs are not touched
    assert decrypt_token(url_token) == url_token

    text_token = make_kartoons_token("#EXTM3U\n#EXTINF:4,\nhttps://stream.example/a.ts\n")
    assert decrypt_token(text_token, "kartoons") == text_token


def test_kartoons_token_shape(make_kartoons_token):
    assert looks_like_kartoons_token(make_kartoons_token("https://stream.example/master.m3u8"))
    assert not looks_like_kartoons_token("https://stream.example/master.m3u8")
    assert not looks_like_kartoons_token("../segments/segment-000001-v1-a1.ts")
    assert not looks_like_kartoons_token("seg001.ts")


def test_single_block_kartoons_token_is_opened(make_kartoons_token):
    # IV + one CBC block is 32 bytes: 43 base64url characters without padding
    token = make_kartoons_token("https://a.io/x")
    assert len(token) == 43
    assert looks_like_kartoons_token(token)
    assert decrypt_token(token, "kartoons") == "https://a.io/x"
