from aiohttp import hdrs

from hedera_analyzer.config import HttpConfig
from hedera_analyzer.config import MirrorNodeConfig
from hedera_analyzer.config import ResolvedHttpConfig
from hedera_analyzer.http import HTTPGateway
from hedera_analyzer.utils import FormattedLogger


class Datasource(HTTPGateway):
    _default_http_config = HttpConfig()

    def __init__(self, config: MirrorNodeConfig) -> None:
        self._config = config
        http_config = ResolvedHttpConfig.create(self._default_http_config, config.http)
        http_config.alias = http_config.alias or config.name
        super().__init__(
            url=config.url,
            http_config=http_config,
        )
        self._logger = FormattedLogger(__name__, config.name + ': {}')

    @property
    def http_config(self) -> ResolvedHttpConfig:
        return self._http_config

    async def get(self, url: str, **kwargs: object) -> object:
        return await self.request(hdrs.METH_GET, url, **kwargs)
