import logging
import sys

from aiohttp import web

from config import PORT, HLS_PATH, PROXY_PATH
from services.hls_proxy import HLSProxy

logger = logging.getLogger(__name__)


def create_app(proxy: HLSProxy = None) -> web.Application:
    """Creates and configures the aiohttp application."""
    proxy = proxy or HLSProxy()

    app = web.Application()

    # add_get also answers HEAD
    app.router.add_get(HLS_PATH, proxy.handle_hls)
    app.router.add_get(PROXY_PATH, proxy.handle_proxy)
    app.router.add_post(PROXY_PATH, proxy.handle_proxy)
    app.router.add_get('/api/stream', proxy.handle_stream)
    app.router.add_get('/api/details', proxy.handle_details)
    app.router.add_get('/api/info', proxy.handle_api_info)

    # Generic OPTIONS handler for CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', proxy.handle_options)

    async def cleanup_handler(app):
        await proxy.cleanup()
    app.on_cleanup.append(cleanup_handler)

    return app


def main():
    """Starts the server."""
    if sys.platform == 'win32':
        # Silence asyncio ConnectionResetError spam on Windows
        logging.getLogger('asyncio').setLevel(logging.CRITICAL)

    logger.info(f"🚀 Starting stream relay on port {PORT}")
    logger.info(f"🔗 Endpoints: {HLS_PATH}, {PROXY_PATH}, /api/stream, /api/details, /api/info")

    # Cancelling the handler on disconnect tears down its upstream request too
    web.run_app(create_app(), host='0.0.0.0', port=PORT, handler_cancellation=True)


if __name__ == '__main__':
    main()
