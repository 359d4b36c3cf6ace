import re
import logging
from typing import Iterable, Optional, Union

logger = logging.getLogger(__name__)

# Splits a folded Set-Cookie header on commas that start a new `name=` pair
# (commas inside Expires dates are left alone).
_SET_COOKIE_SPLIT_RE = re.compile(r",(?=\s*[A-Za-z0-9_\-]+=)")


class CookieJar:
    """Ordered name -> value map rendered as a `Cookie` request header."""

    def __init__(self, cookie_header: str = ""):
        self._cookies = {}
        for part in cookie_header.split(";"):
            name, _, value = part.strip().partition("=")
            if name:
                self._cookies[name] = value

    def merge(self, set_cookie: Union[str, Iterable[str], None]) -> "CookieJar":
        """
        Applies Set-Cookie entries: same-named cookies are overridden, the rest are kept.

        Accepts a single (possibly comma-folded) header value or a list of header values.
        Only the `name=value` part of each entry is used; attributes are ignored.
        """
        if not set_cookie:
            return self

        values = [set_cookie] if isinstance(set_cookie, str) else list(set_cookie)
        for header in values:
            for entry in _SET_COOKIE_SPLIT_RE.split(header):
                name, _, value = entry.split(";", 1)[0].strip().partition("=")
                if name:
                    self._cookies[name] = value
                    logger.debug(f"🍪 Cookie update: {name}")
        return self

    def get(self, name: str) -> Optional[str]:
        return self._cookies.get(name)

    def __contains__(self, name):
        return name in self._cookies

    def header(self) -> str:
        return "; ".join(f"{k}={v}" for k, v in self._cookies.items())

    def __str__(self):
        return self.header()


def merge_cookies(existing: str, set_cookie: Union[str, Iterable[str], None]) -> str:
    """Returns `existing` (a Cookie header) with the Set-Cookie entries merged in."""
    return CookieJar(existing).merge(set_cookie).header()


def extract_cookie(set_cookie: Union[str, Iterable[str], None], name: str) -> Optional[str]:
    """Finds the value of cookie `name` in one or more Set-Cookie header values."""
    if not set_cookie:
        return None
    values = [set_cookie] if isinstance(set_cookie, str) else list(set_cookie)
    pattern = re.compile(rf"(?:^|[\s,;]){re.escape(name)}=([^;,\s]+)")
    for header in values:
        match = pattern.search(header)
        if match:
            return match.group(1)
    return None
