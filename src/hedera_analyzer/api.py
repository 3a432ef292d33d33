import functools
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Any

import orjson
from aiohttp import web

from hedera_analyzer.exceptions import DataNotFoundError
from hedera_analyzer.exceptions import Error
from hedera_analyzer.exceptions import InvalidTokenIdError
from hedera_analyzer.runs import RunManager
from hedera_analyzer.storage import Storage
from hedera_analyzer.utils import json_dumps
from hedera_analyzer.utils import validate_token_id
from hedera_analyzer.visualize import build_graph
from hedera_analyzer.visualize import build_table_view


@dataclass
class ApiContext:
    manager: RunManager
    storage: Storage


def _json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(
        data,
        status=status,
        dumps=lambda x: json_dumps(x, option=orjson.OPT_SORT_KEYS).decode(),
    )


def _error_response(message: str, status: int) -> web.Response:
    return _json_response({'error': message}, status=status)


def _method_wrapper(
    ctx: ApiContext,
    method: Callable[[ApiContext, web.Request], Awaitable[web.Response]],
) -> Callable[[web.Request], Awaitable[web.Response]]:
    @functools.wraps(method)
    async def resolved_method(request: web.Request) -> web.Response:
        try:
            return await method(ctx, request)
        except JSONDecodeError:
            return _error_response('Request is not a JSON', 400)
        except (KeyError, TypeError) as e:
            return _error_response(f'Invalid parameters: {e}', 400)
        except InvalidTokenIdError as e:
            return _error_response(str(e), 400)
        except DataNotFoundError as e:
            return _error_response(e.__doc__ or str(e), 404)
        except Error as e:
            return _error_response(str(e), 500)

    return resolved_method


async def _analyze(ctx: ApiContext, request: web.Request) -> web.Response:
    body = await request.json(loads=orjson.loads)
    token_id = validate_token_id(body['tokenId'])
    run, started = ctx.manager.start_or_attach(token_id)
    return _json_response(
        {
            'status': 'started' if started else 'in_progress',
            'progress': run.stats.get_progress(),
        }
    )


async def _ongoing(ctx: ApiContext, request: web.Request) -> web.Response:
    return _json_response(ctx.manager.ongoing())


async def _status(ctx: ApiContext, request: web.Request) -> web.Response:
    token_id = validate_token_id(request.match_info['tokenId'])
    status = ctx.manager.get_status(token_id)
    if status is None:
        return _json_response({'status': 'not_found'}, status=404)
    return _json_response(status)


async def _visualize(ctx: ApiContext, request: web.Request) -> web.Response:
    token_id = validate_token_id(request.match_info['tokenId'])
    snapshot = await ctx.storage.load_snapshot(token_id)
    if request.query.get('format') == 'graph':
        return _json_response(build_graph(snapshot))
    return _json_response(build_table_view(snapshot))


async def create_api(manager: RunManager, storage: Storage) -> web.Application:
    ctx = ApiContext(manager=manager, storage=storage)
    routes = web.RouteTableDef()
    routes.post('/analyze')(_method_wrapper(ctx, _analyze))
    routes.get('/analyze/ongoing')(_method_wrapper(ctx, _ongoing))
    routes.get('/analyze/{tokenId}/status')(_method_wrapper(ctx, _status))
    routes.get('/visualize/{tokenId}')(_method_wrapper(ctx, _visualize))

    app = web.Application()
    app.add_routes(routes)
    return app
