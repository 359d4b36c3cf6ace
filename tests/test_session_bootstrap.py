import pytest
from aiohttp import web

from services.session_bootstrap import (
    PROXIED_SET_COOKIE, BypassError, BypassTarget, SessionBootstrapManager, SessionState,
)
from utils.cache import TTLStore
from utils.cookies import CookieJar


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def challenge_app(succeed_on: int = 1, header: str = 'Set-Cookie'):
    """A challenge endpoint that answers with the success marker from the `succeed_on`-th POST on."""
    calls = []

    async def challenge(request):
        body = await request.text()
        calls.append((request.query.get('_'), body))
        if len(calls) < succeed_on:
            return web.Response(text='{"r":"y"}')
        return web.Response(text='{"r":"n"}', headers={header: f't_hash_t=cookie{len(calls)}; Path=/; Max-Age=54000'})

    async def step(request):
        return web.Response(text='ok', headers={'Set-Cookie': 'lang=hin; Path=/'})

    app = web.Application()
    app.router.add_post('/tv/p.php', challenge)
    app.router.add_post('/language.php', step)
    return app, calls


async def test_bypass_retries_until_marker(aiohttp_server, fetcher):
    app, calls = challenge_app(succeed_on=4)
    server = await aiohttp_server(app)
    manager = SessionBootstrapManager(fetcher, TTLStore(), ttl=100, max_retries=10, retry_delay=0)
    target = BypassTarget("test", str(server.make_url('/tv/p.php')))

    assert manager.state(target) == SessionState.EMPTY
    assert await manager.get_cookie(target) == "cookie4"
    assert len(calls) == 4
    assert manager.state(target) == SessionState.ACTIVE

    # Every attempt is cache-busted and posts the same stamp
    stamps = [stamp for stamp, _ in calls]
    assert all(stamps)
    assert all(body == f"t={stamp}" for stamp, body in calls)

    # Cache hit: no further challenge traffic
    assert await manager.get_cookie(target) == "cookie4"
    assert len(calls) == 4


async def test_bypass_gives_up_after_max_retries(aiohttp_server, fetcher):
    app, calls = challenge_app(succeed_on=100)
    server = await aiohttp_server(app)
    manager = SessionBootstrapManager(fetcher, TTLStore(), ttl=100, max_retries=3, retry_delay=0)

    with pytest.raises(BypassError):
        await manager.get_cookie(BypassTarget("test", str(server.make_url('/tv/p.php'))))
    assert len(calls) == 3


async def test_expired_cookie_reruns_bypass(aiohttp_server, fetcher):
    app, calls = challenge_app()
    server = await aiohttp_server(app)
    clock = FakeClock()
    manager = SessionBootstrapManager(fetcher, TTLStore(clock=clock), ttl=54_000, max_retries=3, retry_delay=0)
    target = BypassTarget("test", str(server.make_url('/tv/p.php')))

    assert await manager.get_cookie(target) == "cookie1"
    clock.now = 53_999
    assert await manager.get_cookie(target) == "cookie1"
    clock.now = 54_000
    assert manager.state(target) == SessionState.EXPIRED
    assert await manager.get_cookie(target) == "cookie2"
    assert manager.state(target) == SessionState.ACTIVE
    assert len(calls) == 2

    # Dropping the cookie on purpose starts over from scratch
    manager.invalidate(target)
    assert manager.state(target) == SessionState.EMPTY


async def test_direct_and_proxied_caches_are_separate(aiohttp_server, fetcher):
    app, calls = challenge_app(header=PROXIED_SET_COOKIE)
    server = await aiohttp_server(app)
    store = TTLStore()
    manager = SessionBootstrapManager(fetcher, store, ttl=100, max_retries=1, retry_delay=0)
    target = BypassTarget("test", str(server.make_url('/tv/p.php')))

    # The forwarded header only counts when the challenge went through the proxy hop
    assert await manager.get_cookie(target, via_proxy=True) == "cookie1"
    with pytest.raises(BypassError):
        await manager.get_cookie(target, via_proxy=False)

    assert manager.cached(target, via_proxy=True).value == "cookie1"
    assert manager.cached(target, via_proxy=False) is None
    assert manager.cache_key(target, True) != manager.cache_key(target, False)


async def test_merge_step_accumulates_cookies(aiohttp_server, fetcher):
    app, _ = challenge_app()
    server = await aiohttp_server(app)
    manager = SessionBootstrapManager(fetcher, TTLStore())
    jar = CookieJar("t_hash_t=abc; hd=on")

    body = await manager.merge_step(jar, str(server.make_url('/language.php')), method='POST', data="lang=hin")
    assert body == "ok"
    assert jar.header() == "t_hash_t=abc; hd=on; lang=hin"
