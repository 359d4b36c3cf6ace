import base64
import binascii
import hashlib
import logging
import re
from typing import Optional

from Crypto.Cipher import AES

from config import ENC2_SECRET, KARTOONS_KEY

logger = logging.getLogger(__name__)

ENC2_PREFIX = "enc2:"
# Tokens may be embedded anywhere in a tag line; padding is optional.
ENC2_TOKEN_RE = re.compile(r"enc2:[A-Za-z0-9_\-+/]+=*")

GCM_IV_SIZE = 12
GCM_TAG_SIZE = 16
CBC_IV_SIZE = 16


def b64url_to_bytes(value: str) -> bytes:
    """Decodes base64url (or standard base64) text, ignoring whitespace and missing padding."""
    s = re.sub(r"\s+", "", value)
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s)


def _enc2_key(secret: str = ENC2_SECRET) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


_ENC2_KEY = _enc2_key()


def kartoons_key(key: str = KARTOONS_KEY) -> bytes:
    """
    Builds the scheme-B AES-256 key: the UTF-8 key string right-padded with spaces to 32 bytes.

    The token issuer derives its key the same way, so this must not be replaced with a real KDF.
    """
    return key.encode("utf-8").ljust(32, b" ")[:32]


_KARTOONS_KEY = kartoons_key()


def decrypt_enc2(value: Optional[str], key: bytes = _ENC2_KEY) -> Optional[str]:
    """
    Decrypts an `enc2:` token (AES-256-GCM, layout IV(12) || CIPHERTEXT || TAG(16)).

    Values without the prefix are returned untouched. Returns None when the token cannot be
    decrypted (bad encoding, short blob, authentication failure, non UTF-8 plaintext).
    """
    if not value or not value.startswith(ENC2_PREFIX):
        return value

    try:
        blob = b64url_to_bytes(value[len(ENC2_PREFIX):])
        if len(blob) <= GCM_IV_SIZE + GCM_TAG_SIZE:
            return None

        iv = blob[:GCM_IV_SIZE]
        ciphertext = blob[GCM_IV_SIZE:-GCM_TAG_SIZE]
        tag = blob[-GCM_TAG_SIZE:]

        cipher = AES.new(key, AES.MODE_GCM, nonce=iv)
        return cipher.decrypt_and_verify(ciphertext, tag).decode("utf-8")
    except (binascii.Error, ValueError) as e:
        # UnicodeDecodeError is a ValueError too
        logger.warning(f"⚠️ enc2 token could not be decrypted: {e}")
        return None


def _strip_pkcs7(data: bytes) -> bytes:
    # Malformed padding is tolerated: the buffer is returned as-is.
    # The Kartoons encoder has been seen emitting it, so rejecting would break playback.
    if not data:
        return data
    pad = data[-1]
    if pad < 1 or pad > AES.block_size or pad > len(data):
        return data
    if data[-pad:] != bytes([pad]) * pad:
        return data
    return data[:-pad]


def decrypt_kartoons(value: Optional[str], key: bytes = _KARTOONS_KEY) -> Optional[str]:
    """Decrypts a Kartoons stream token (AES-256-CBC, layout IV(16) || CIPHERTEXT, no prefix)."""
    if not value:
        return None

    try:
        blob = b64url_to_bytes(value)
        if len(blob) <= CBC_IV_SIZE:
            return None

        cipher = AES.new(key, AES.MODE_CBC, iv=blob[:CBC_IV_SIZE])
        plaintext = _strip_pkcs7(cipher.decrypt(blob[CBC_IV_SIZE:]))
        return plaintext.decode("utf-8")
    except (binascii.Error, ValueError) as e:
        logger.warning(f"⚠️ Kartoons token could not be decrypted: {e}")
        return None


def first_line(text: str) -> str:
    return re.split(r"\r?\n", text, maxsplit=1)[0].strip()


def decrypt_inline(value: str) -> str:
    """
    Replaces `enc2:` tokens inside a string with their plaintext.

    A value that is a token as a whole is reduced to the first line of its plaintext. Tokens
    embedded in a larger string (tag lines) are replaced in place. Undecryptable tokens stay.
    """
    if ENC2_PREFIX not in value:
        return value

    if value.startswith(ENC2_PREFIX):
        decrypted = decrypt_enc2(value)
        return first_line(decrypted if decrypted is not None else value)

    def _replace(match):
        decrypted = decrypt_enc2(match.group(0))
        return first_line(decrypted) if decrypted is not None else match.group(0)

    return ENC2_TOKEN_RE.sub(_replace, value)


def looks_like_kartoons_token(value: str) -> bool:
    """A bare base64url blob: no scheme, no path separators, long enough to hold IV + one block (43 chars)."""
    v = value.strip()
    if len(v) < 43 or "://" in v or v.startswith(("/", ".", "#", "?")):
        return False
    return re.fullmatch(r"[A-Za-z0-9_\-+/]+=*", v) is not None


def decrypt_token(value: str, mode: Optional[str] = None) -> str:
    """
    Decrypts a reference according to caller context.

    `enc2:` tokens are always handled. When `mode` is "kartoons", bare tokens are tried with
    scheme B and used only if they decrypt to an http(s) URL. Anything else is returned as given.
    """
    out = decrypt_inline(value)
    if out != value or mode != "kartoons" or not looks_like_kartoons_token(value):
        return out

    decrypted = decrypt_kartoons(value)
    if decrypted and decrypted.strip().startswith("http"):
        return first_line(decrypted)
    return value
