# NOTE: All imports except the basic ones are very lazy in this module. Let's keep it that way.
import asyncio
import atexit
import logging
from collections.abc import AsyncIterator
from collections.abc import Callable
from collections.abc import Coroutine
from contextlib import AsyncExitStack
from contextlib import asynccontextmanager
from contextlib import suppress
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any
from typing import TypeVar
from typing import cast

import click
import uvloop

from hedera_analyzer import __version__

if TYPE_CHECKING:
    from hedera_analyzer.config import HederaAnalyzerConfig
    from hedera_analyzer.datasources.mirror_node import MirrorNodeDatasource
    from hedera_analyzer.runs import AnalyzerFactory
    from hedera_analyzer.storage import Storage

# NOTE: Do not try to load config for these commands as they don't need it
NO_CONFIG_CMDS = {
    'config',
}

_logger = logging.getLogger(__name__)


def _load_env_files(env_file_args: list[str]) -> None:
    from dotenv import load_dotenv

    from hedera_analyzer.exceptions import ConfigurationError

    for arg in env_file_args:
        path = Path(arg)
        if not path.is_file():
            raise ConfigurationError(f'Env file not found: {path}')
        _logger.info('Applying env_file `%s`', path)
        load_dotenv(path, override=True)


def echo(message: str, err: bool = False, **styles: Any) -> None:
    with suppress(BrokenPipeError):
        click.secho(message, err=err, **styles)


def green_echo(message: str) -> None:
    echo(message, fg='green')


def red_echo(message: str) -> None:
    echo(message, err=True, fg='red')


def _print_help_atexit(error: Exception) -> None:
    """Prints a helpful error message after the traceback"""
    from hedera_analyzer.exceptions import Error

    def _print() -> None:
        if isinstance(error, Error):
            red_echo(error.help())
        else:
            red_echo(Error.default_help())

    atexit.register(_print)


WrappedCommandT = TypeVar('WrappedCommandT', bound=Callable[..., Coroutine[Any, Any, None]])


@dataclass
class CLIContext:
    config: 'HederaAnalyzerConfig'


def _cli_wrapper(fn: WrappedCommandT) -> WrappedCommandT:
    @wraps(fn)
    def wrapper(ctx: click.Context, *args: Any, **kwargs: Any) -> None:
        try:
            uvloop.run(fn(ctx, *args, **kwargs))
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        except Exception as e:
            _print_help_atexit(e)
            raise e

    return cast(WrappedCommandT, wrapper)


def _get_config(ctx: click.Context) -> 'HederaAnalyzerConfig':
    return cast(CLIContext, ctx.obj).config


def _start_prometheus(config: 'HederaAnalyzerConfig') -> None:
    if not config.prometheus:
        return

    from prometheus_client import start_http_server

    from hedera_analyzer.prometheus import Metrics

    _logger.info('Starting Prometheus server at %s:%s', config.prometheus.host, config.prometheus.port)
    start_http_server(config.prometheus.port, config.prometheus.host)
    Metrics.enabled = True


def _echo_json(data: Any) -> None:
    from hedera_analyzer.utils import json_dumps

    echo(json_dumps(data).decode())


@click.group(context_settings={'max_content_width': 120})
@click.version_option(__version__)
@click.option(
    '--config',
    '-c',
    type=str,
    multiple=True,
    help='A path to analyzer config; `analyzer.yaml` in current directory if exists.',
    default=[],
    metavar='PATH',
    envvar='HEDERA_ANALYZER_CONFIG',
)
@click.option(
    '--env-file',
    '-e',
    type=str,
    multiple=True,
    help='A path to .env file containing `KEY=value` strings.',
    default=[],
    metavar='PATH',
    envvar='HEDERA_ANALYZER_ENV_FILE',
)
@click.pass_context
@_cli_wrapper
async def cli(ctx: click.Context, config: list[str], env_file: list[str]) -> None:
    """Hedera token holder and transfer analyzer."""
    from hedera_analyzer.config import set_up_log_handler

    set_up_log_handler()

    # NOTE: These commands load config themselves
    if ctx.invoked_subcommand in NO_CONFIG_CMDS:
        return

    from hedera_analyzer.config import HederaAnalyzerConfig

    # NOTE: Apply env files before loading the config
    _load_env_files(list(env_file))
    _config = HederaAnalyzerConfig.discover(list(config))
    _config.set_up_logging()

    ctx.obj = CLIContext(config=_config)


@asynccontextmanager
async def _create_services(config: 'HederaAnalyzerConfig') -> AsyncIterator[tuple['MirrorNodeDatasource', 'Storage']]:
    from hedera_analyzer.datasources.mirror_node import MirrorNodeDatasource
    from hedera_analyzer.storage import create_storage

    async with AsyncExitStack() as stack:
        datasource = MirrorNodeDatasource(config.mirror_node)
        await stack.enter_async_context(datasource)
        storage = await stack.enter_async_context(create_storage(config.storage))
        yield datasource, storage


def _create_factory(
    config: 'HederaAnalyzerConfig',
    datasource: 'MirrorNodeDatasource',
    storage: 'Storage',
) -> 'AnalyzerFactory':
    from hedera_analyzer.analyzer import TokenAnalyzer
    from hedera_analyzer.models import AnalysisStats

    def factory(token_id: str, stats: AnalysisStats) -> TokenAnalyzer:
        return TokenAnalyzer(token_id, datasource, storage, config.analysis, stats)

    return factory


@cli.command()
@click.argument('token_id', type=str)
@click.pass_context
@_cli_wrapper
async def analyze(ctx: click.Context, token_id: str) -> None:
    """Fetch holders and recent transfers of a token and persist them.

    TOKEN_ID is a `shard.realm.num` identifier, e.g. `0.0.1234`.
    """
    from hedera_analyzer.models import AnalysisStats
    from hedera_analyzer.utils import validate_token_id

    validate_token_id(token_id)
    config = _get_config(ctx)
    _start_prometheus(config)

    async with _create_services(config) as (datasource, storage):
        analyzer = _create_factory(config, datasource, storage)(token_id, AnalysisStats())
        result = await analyzer.run()

    green_echo(f'Analysis of `{token_id}` completed')
    _echo_json({'result': result.to_json(), 'progress': analyzer.stats.get_progress()})


@cli.command()
@click.argument('token_id', type=str)
@click.option('--graph', '-g', is_flag=True, help='Print nodes and links instead of tables.')
@click.pass_context
@_cli_wrapper
async def visualize(ctx: click.Context, token_id: str, graph: bool) -> None:
    """Print persisted holders and transfers of a token as JSON."""
    from hedera_analyzer.storage import create_storage
    from hedera_analyzer.utils import validate_token_id
    from hedera_analyzer.visualize import build_graph
    from hedera_analyzer.visualize import build_table_view

    validate_token_id(token_id)
    config = _get_config(ctx)
    async with create_storage(config.storage) as storage:
        snapshot = await storage.load_snapshot(token_id)

    _echo_json(build_graph(snapshot) if graph else build_table_view(snapshot))


@cli.command()
@click.pass_context
@_cli_wrapper
async def serve(ctx: click.Context) -> None:
    """Run HTTP API to start analyses and query their results."""
    from aiohttp import web

    from hedera_analyzer.api import create_api
    from hedera_analyzer.runs import RunManager

    config = _get_config(ctx)
    _start_prometheus(config)

    async with _create_services(config) as (datasource, storage):
        manager = RunManager(_create_factory(config, datasource, storage))
        app = await create_api(manager, storage)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, config.api.host, config.api.port)
        await site.start()
        _logger.info('API is listening on http://%s:%s', config.api.host, config.api.port)

        try:
            await asyncio.Event().wait()
        finally:
            await manager.close()
            await runner.cleanup()


@cli.group()
@click.pass_context
@_cli_wrapper
async def config(ctx: click.Context) -> None:
    """Commands to manage analyzer configuration."""
    pass


@config.command(name='export')
@click.option('--unsafe', is_flag=True, help='Use actual environment variables instead of default values.')
@click.pass_context
@_cli_wrapper
async def config_export(ctx: click.Context, unsafe: bool) -> None:
    """
    Print config after applying defaults and environment variables.

    WARNING: Avoid sharing output with 3rd-parties when `--unsafe` flag set - it may contain secrets!
    """
    from hedera_analyzer.config import HederaAnalyzerConfig

    # NOTE: Late loading; cli() was skipped.
    params = ctx.parent.parent.params  # type: ignore[union-attr]
    _load_env_files(list(params['env_file']))

    _config = HederaAnalyzerConfig.discover(list(params['config']), unsafe=unsafe)
    echo(_config.dump())
