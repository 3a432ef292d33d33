"""Config files parsing and processing

Configuration is a tree of pydantic dataclasses. Every section has defaults, so the analyzer runs without
a config file at all; YAML files (with `${VAR:-default}` substitution, see `hedera_analyzer.yaml`) override them.
"""

from __future__ import annotations

import logging
import sys
from collections import defaultdict
from pathlib import Path
from typing import Literal

import orjson
from pydantic import ConfigDict
from pydantic import Field
from pydantic import TypeAdapter
from pydantic import ValidationError
from pydantic.dataclasses import dataclass
from pydantic_core import to_jsonable_python

from hedera_analyzer import env
from hedera_analyzer.exceptions import ConfigurationError
from hedera_analyzer.yaml import dump
from hedera_analyzer.yaml import load_configs

DEFAULT_CONFIG = 'analyzer.yaml'
DEFAULT_MIRROR_NODE_URL = 'https://mainnet-public.mirrornode.hedera.com/api/v1'
LOG_HANDLER_NAME = 'hedera_analyzer'
LOG_FORMAT = '%(asctime)s %(levelname)-8s %(name)s: %(message)s'
# NOTE: `extra` fields of a record are added to these
JSON_LOG_FIELDS = ('asctime', 'levelname', 'name', 'message')


def set_up_log_handler() -> None:
    """Install a stdout handler on the root logger once; JSON lines when `HEDERA_ANALYZER_JSON_LOG` is set"""
    root = logging.getLogger()
    if any(handler.get_name() == LOG_HANDLER_NAME for handler in root.handlers):
        return

    formatter: logging.Formatter
    if env.JSON_LOG:
        from pythonjsonlogger import jsonlogger

        formatter = jsonlogger.JsonFormatter(  # type: ignore[no-untyped-call]
            ' '.join(f'%({field})s' for field in JSON_LOG_FIELDS),
            json_serializer=lambda obj, **kw: orjson.dumps(obj, default=str).decode(),
        )
    else:
        formatter = logging.Formatter(LOG_FORMAT)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.set_name(LOG_HANDLER_NAME)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # NOTE: Per-query and per-request records are too verbose at INFO
    logging.getLogger('tortoise').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
    if not env.TEST:
        logging.captureWarnings(True)


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class HttpConfig:
    """Advanced configuration of HTTP client

    :param retry_count: Number of retries after request failed before giving up
    :param retry_sleep: Sleep time between retries; multiplied by attempt number
    :param request_interval: Minimal interval between two requests in seconds; doubled on every throttling response in a row
    :param request_interval_max: Upper bound for request interval
    :param ratelimit_rate: Number of requests per period ("drops" in leaky bucket)
    :param ratelimit_period: Time period for rate limiting in seconds
    :param ratelimit_sleep: Base sleep time after 429/503 response; doubled on every throttling response in a row
    :param ratelimit_sleep_max: Upper bound for sleep time after 429/503 response
    :param ratelimit_retry_count: Number of retries of a throttled request before giving up
    :param connection_limit: Number of simultaneous connections
    :param connection_timeout: Connection timeout in seconds
    :param request_timeout: Request timeout in seconds
    :param alias: Alias for this HTTP client (dev only)
    """

    retry_count: int | None = None
    retry_sleep: float | None = None
    request_interval: float | None = None
    request_interval_max: float | None = None
    ratelimit_rate: int | None = None
    ratelimit_period: int | None = None
    ratelimit_sleep: float | None = None
    ratelimit_sleep_max: float | None = None
    ratelimit_retry_count: int | None = None
    connection_limit: int | None = None
    connection_timeout: int | None = None
    request_timeout: int | None = None
    alias: str | None = None


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class ResolvedHttpConfig:
    __doc__ = HttpConfig.__doc__

    retry_count: int = 3
    retry_sleep: float = 2.0
    request_interval: float = 0.1
    request_interval_max: float = 5.0
    ratelimit_rate: int = 0
    ratelimit_period: int = 0
    ratelimit_sleep: float = 1.0
    ratelimit_sleep_max: float = 30.0
    ratelimit_retry_count: int = 10
    connection_limit: int = 100
    connection_timeout: int = 30
    request_timeout: int = 30
    alias: str | None = None

    @classmethod
    def create(
        cls,
        default: HttpConfig,
        user: HttpConfig | None,
    ) -> ResolvedHttpConfig:
        config = cls()
        # NOTE: Apply datasource defaults first
        for merge_config in (default, user):
            if merge_config is None:
                continue
            for k, v in merge_config.__dict__.items():
                if v is not None:
                    setattr(config, k, v)
        return config


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class MirrorNodeConfig:
    """Mirror node REST API connection

    :param url: Base URL of the REST API including version prefix
    :param http: HTTP client configuration
    """

    url: str = DEFAULT_MIRROR_NODE_URL
    http: HttpConfig | None = None

    @property
    def name(self) -> str:
        return 'mirror_node'


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class AnalysisConfig:
    """Analysis run parameters

    :param holder_batch_size: Number of holders processed concurrently in one batch
    :param page_size: Number of transactions requested per page
    :param batch_delay: Pause between batches in seconds
    :param window_days: How far back transaction history is fetched
    :param incremental: Continue from the newest persisted transfer instead of refetching the whole window
    :param strict: Fail the run instead of keeping partial results when retries are exhausted
    """

    holder_batch_size: int = Field(default=25, gt=0)
    page_size: int = Field(default=50, gt=0, le=100)
    batch_delay: float = Field(default=0.2, ge=0)
    window_days: int = Field(default=180, gt=0)
    incremental: bool = True
    strict: bool = False


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class CsvStorageConfig:
    """CSV files storage

    :param kind: always 'csv'
    :param path: Directory to store `<token>_token_data` folders in
    :param mode: `append` to add only unseen transactions, `rewrite` to overwrite the whole file
    """

    kind: Literal['csv'] = 'csv'
    path: Path = Path('token_data')
    mode: Literal['append', 'rewrite'] = 'append'


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class DatabaseStorageConfig:
    """Database storage with upserts by natural key

    :param kind: always 'database'
    :param url: Tortoise ORM connection URL
    """

    kind: Literal['database']
    url: str = 'sqlite://token_data/analyzer.sqlite3'


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class ApiConfig:
    """HTTP API config

    :param host: Host to bind to
    :param port: Port to bind to
    """

    host: str = '127.0.0.1'
    port: int = 10000


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class PrometheusConfig:
    """Config for Prometheus integration.

    :param host: Host to bind to
    :param port: Port to bind to
    """

    host: str
    port: int = 8000


@dataclass(config=ConfigDict(extra='forbid'), kw_only=True)
class HederaAnalyzerConfig:
    """Analyzer configuration file

    :param mirror_node: Mirror node REST API connection
    :param analysis: Analysis run parameters
    :param storage: Where holders and transactions are persisted
    :param api: HTTP API config
    :param prometheus: Prometheus integration config
    :param logging: Modify logging verbosity
    """

    mirror_node: MirrorNodeConfig = Field(default_factory=MirrorNodeConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    storage: CsvStorageConfig | DatabaseStorageConfig = Field(
        default_factory=CsvStorageConfig,
        discriminator='kind',
    )
    api: ApiConfig = Field(default_factory=ApiConfig)
    prometheus: PrometheusConfig | None = None
    logging: dict[str, str | int] | str | int = 'INFO'

    def __post_init__(self) -> None:
        self._environment: dict[str, str] = {}

    @classmethod
    def load(
        cls,
        paths: list[Path],
        unsafe: bool = True,
    ) -> HederaAnalyzerConfig:
        config_json, config_environment = load_configs(paths, unsafe=unsafe)

        try:
            config = TypeAdapter(cls).validate_python(config_json)
        except ValidationError as e:
            errors_by_path: defaultdict[str, list[str]] = defaultdict(list)
            for error in e.errors():
                path = '.'.join(str(loc) for loc in error['loc'])
                errors_by_path[path].append(error['msg'])

            msgs = [f'- {path}: {msg}' for path, errors in errors_by_path.items() for msg in errors]
            msg = 'Config validation failed:\n\n' + '\n'.join(msgs)
            raise ConfigurationError(msg) from e

        config._environment = config_environment
        return config

    @classmethod
    def discover(cls, paths: list[str] | None = None, unsafe: bool = True) -> HederaAnalyzerConfig:
        """Load config from explicit paths, env variable or `analyzer.yaml` in cwd; defaults otherwise"""
        config_paths = [Path(p) for p in paths or ()]
        if not config_paths and env.CONFIG_PATH:
            config_paths = [env.CONFIG_PATH]
        if not config_paths and Path(DEFAULT_CONFIG).is_file():
            config_paths = [Path(DEFAULT_CONFIG)]
        return cls.load(config_paths, unsafe=unsafe)

    def set_up_logging(self) -> None:
        set_up_log_handler()

        loglevels = {}
        if isinstance(self.logging, dict):
            loglevels = {**self.logging}
        else:
            loglevels['hedera_analyzer'] = self.logging

        # NOTE: Environment variables have higher priority
        if env.DEBUG:
            loglevels['hedera_analyzer'] = 'DEBUG'

        for name, level in loglevels.items():
            try:
                if isinstance(level, str):
                    level = getattr(logging, level.upper())
                if not isinstance(level, int):
                    raise ValueError
            except (AttributeError, ValueError):
                raise ConfigurationError(f'Invalid logging level `{level}` for logger `{name}`') from None

            logging.getLogger(name).setLevel(level)

    def dump(self) -> str:
        config_json = orjson.loads(orjson.dumps(self, default=to_jsonable_python))
        return dump(config_json)

