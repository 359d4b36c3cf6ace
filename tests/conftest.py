import base64
import hashlib

import pytest
from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad

from config import ENC2_SECRET
from services.upstream import UpstreamFetcher
from utils.crypto import kartoons_key


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


@pytest.fixture
def make_enc2():
    """Seals plaintext the way the provider apps issue enc2: tokens."""
    def _make(plaintext: str, secret: str = ENC2_SECRET) -> str:
        key = hashlib.sha256(secret.encode()).digest()
        iv = get_random_bytes(12)
        cipher = AES.new(key, AES.MODE_GCM, nonce=iv)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode())
        return "enc2:" + _b64url(iv + ciphertext + tag)
    return _make


@pytest.fixture
def make_kartoons_token():
    def _make(plaintext: str, padded: bool = True) -> str:
        iv = get_random_bytes(16)
        data = plaintext.encode()
        data = pad(data, 16) if padded else data
        cipher = AES.new(kartoons_key(), AES.MODE_CBC, iv=iv)
        return _b64url(iv + cipher.encrypt(data))
    return _make


@pytest.fixture
async def fetcher():
    f = UpstreamFetcher(emulation_hosts=[])
    yield f
    await f.close()
