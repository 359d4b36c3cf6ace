import logging
import os
import random
import re
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Logging is configured once, at first import of this module
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)

# asyncio emits "Unknown child process pid" spuriously under load
class AsyncioWarningFilter(logging.Filter):
    def filter(self, record):
        return "Unknown child process pid" not in record.getMessage()

logging.getLogger('asyncio').addFilter(AsyncioWarningFilter())

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("true", "1", "yes", "on")


def _env_list(name: str) -> list:
    """Parses a comma-separated environment variable into a list of non-empty strings."""
    raw = os.environ.get(name, "").strip()
    if raw:
        return [p.strip() for p in raw.split(',') if p.strip()]
    return []


# --- Upstream network identity ---
@dataclass(frozen=True)
class TransportRoute:
    """Outbound routing rule: URLs containing `fragment` go through `proxy` (None = direct)."""
    fragment: str
    proxy: Optional[str] = None
    disable_ssl: bool = False


_ROUTE_RE = re.compile(r"\{([^{}]*)\}")


def parse_transport_routes(raw: Optional[str] = None) -> list:
    """
    Parses TRANSPORT_ROUTES, e.g. `{URL=cdn.example, PROXY=socks5://host:1080, DISABLE_SSL=true}, {URL=api.example}`.

    Rules are matched in order; a rule with an empty PROXY forces a direct connection.
    """
    raw = os.environ.get('TRANSPORT_ROUTES', "") if raw is None else raw
    routes = []
    for body in _ROUTE_RE.findall(raw):
        fields = {}
        for item in body.split(','):
            key, _, value = item.strip().partition('=')
            fields[key.strip().upper()] = value.strip()
        if not fields.get('URL'):
            logger.warning(f"Ignoring transport route without URL: {{{body}}}")
            continue
        routes.append(TransportRoute(
            fragment=fields['URL'],
            proxy=fields.get('PROXY') or None,
            disable_ssl=fields.get('DISABLE_SSL', '').lower() in ('true', '1', 'yes', 'on'),
        ))
    return routes


def match_route(url: str, transport_routes: list) -> Optional[TransportRoute]:
    if not url:
        return None
    return next((route for route in transport_routes if route.fragment in url), None)


def get_proxy_for_url(url: str, transport_routes: list, global_proxies: list) -> Optional[str]:
    """Routed proxy for `url`, else a random global proxy, else None (direct)."""
    route = match_route(url, transport_routes)
    if route is not None:
        return route.proxy
    return random.choice(global_proxies) if global_proxies else None


def get_ssl_setting_for_url(url: str, transport_routes: list) -> bool:
    """True when certificate checks are disabled for `url`."""
    route = match_route(url, transport_routes)
    return bool(route and route.disable_ssl)


GLOBAL_PROXIES = _env_list('GLOBAL_PROXY')
TRANSPORT_ROUTES = parse_transport_routes()

if GLOBAL_PROXIES:
    logging.info(f"🌍 {len(GLOBAL_PROXIES)} upstream proxies configured")
if TRANSPORT_ROUTES:
    logging.info(f"🚦 {len(TRANSPORT_ROUTES)} transport routes configured")

API_PASSWORD = os.environ.get("API_PASSWORD")
PORT = int(os.environ.get("PORT", 7860))

# --- Proxy surface ---
HLS_PATH = os.environ.get("HLS_PATH", "/hls")
PROXY_PATH = os.environ.get("PROXY_PATH", "/proxy")
ABSOLUTE_PROXY_URLS = _env_bool("ABSOLUTE_PROXY_URLS", "false")

# --- Outbound request defaults ---
DEFAULT_USER_AGENT = os.environ.get(
    "DEFAULT_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"
)
DEFAULT_REFERER = os.environ.get("DEFAULT_REFERER", "")
DEFAULT_COOKIE = os.environ.get("DEFAULT_COOKIE", "hd=on")
BROWSER_EMULATION_HOSTS = _env_list("BROWSER_EMULATION_HOSTS")
UPSTREAM_TIMEOUT = int(os.environ.get("UPSTREAM_TIMEOUT", 60))
UPSTREAM_CONNECT_TIMEOUT = int(os.environ.get("UPSTREAM_CONNECT_TIMEOUT", 30))
STREAM_RESOLVE_TIMEOUTS = tuple(float(t) for t in _env_list("STREAM_RESOLVE_TIMEOUTS") or ("4", "8"))

# --- Token secrets ---
# enc2: tokens are sealed with SHA-256(ENC2_SECRET). The default is the value shipped by the provider apps.
ENC2_SECRET = os.environ.get(
    "ENC2_SECRET",
    "pmS0CAMG1Ruq49WbMyhE3fh1sOuLYEL9rtFazYYljVI2j4BPSog73hW7A7xMhceHD0iwrPrVVDXLvxyWr"
)
KARTOONS_KEY = os.environ.get("KARTOONS_KEY", "kartoons-stream-link-key")

# --- Manifest handling ---
SNIFF_MAX_BYTES = int(os.environ.get("SNIFF_MAX_BYTES", 2_000_000))
SEGMENT_BATCHING = _env_bool("SEGMENT_BATCHING", "true")
SEGMENT_BATCH_SIZE = int(os.environ.get("SEGMENT_BATCH_SIZE", 10))
CONCAT_MAX_SEGMENTS = int(os.environ.get("CONCAT_MAX_SEGMENTS", 20))

# --- Session bootstrap & provider caches (seconds) ---
BYPASS_COOKIE_TTL = int(os.environ.get("BYPASS_COOKIE_TTL", 54_000))
DETAILS_CACHE_TTL = int(os.environ.get("DETAILS_CACHE_TTL", 600))
STREAM_CACHE_TTL = int(os.environ.get("STREAM_CACHE_TTL", 600))
BYPASS_MAX_RETRIES = int(os.environ.get("BYPASS_MAX_RETRIES", 10))
BYPASS_RETRY_DELAY = float(os.environ.get("BYPASS_RETRY_DELAY", 0.5))

# --- Providers ---
MEOWVERSE_MAIN_URL = os.environ.get("MEOWVERSE_MAIN_URL", "https://net20.cc").rstrip('/')
MEOWVERSE_STREAM_URL = os.environ.get("MEOWVERSE_STREAM_URL", "https://net51.cc").rstrip('/')
MEOWVERSE_USER_TOKEN = os.environ.get("MEOWVERSE_USER_TOKEN", "233123f803cf02184bf6c67e149cdd50")
MEOWVERSE_VIA_PROXY = _env_bool("MEOWVERSE_VIA_PROXY", "false")
KARTOONS_API_URL = os.environ.get("KARTOONS_API_URL", "https://api.kartoons.fun").rstrip('/')

if SEGMENT_BATCHING:
    logging.info(f"🧩 Segment batching enabled (batch={SEGMENT_BATCH_SIZE}, concat cap={CONCAT_MAX_SEGMENTS})")

def check_password(request) -> bool:
    """True when no API_PASSWORD is set or the request carries it (query or header)."""
    if not API_PASSWORD:
        return True
    supplied = request.query.get("api_password") or request.headers.get("x-api-password")
    return supplied == API_PASSWORD
