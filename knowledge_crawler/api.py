"""
HTTP trigger endpoints for the crawler.
"""

import json
import logging
from functools import partial

from aiohttp import web

from .crawler.controller import CrawlController


logger = logging.getLogger(__name__)

CONTROLLER_KEY = web.AppKey('controller', CrawlController)

json_response = partial(web.json_response, dumps=partial(json.dumps, ensure_ascii=False, default=str))


async def start_crawler(request: web.Request) -> web.Response:
    """Seed the queue with the root listing page."""
    controller = request.app[CONTROLLER_KEY]
    try:
        job = await controller.start_crawl()
    except Exception as e:
        logger.error(f"Error starting crawler: {e}", exc_info=True)
        return json_response({'status': 'error', 'message': str(e)}, status=500)

    return json_response({'status': 'success', 'message': 'Crawler started', 'job_id': job.id})


async def test_storage(request: web.Request) -> web.Response:
    """Write and read back a synthetic article."""
    controller = request.app[CONTROLLER_KEY]
    try:
        stored = await controller.test_storage()
    except Exception as e:
        logger.error(f"Storage test failed: {e}", exc_info=True)
        return json_response({'status': 'error', 'message': str(e)}, status=500)

    return json_response({'status': 'success', 'article': stored})


def create_app(controller: CrawlController, manage_lifecycle: bool = True) -> web.Application:
    """
    Build the trigger application.

    With ``manage_lifecycle`` the controller is initialized on startup, its
    workers run in the background and everything is closed on cleanup.
    """
    app = web.Application()
    app[CONTROLLER_KEY] = controller
    app.router.add_get('/api/crawler/start', start_crawler)
    app.router.add_get('/api/test/storage', test_storage)

    if manage_lifecycle:
        async def controller_context(app: web.Application):
            await controller.initialize()
            controller.start_workers()
            yield
            await controller.close()

        app.cleanup_ctx.append(controller_context)

    return app
