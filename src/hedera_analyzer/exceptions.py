import textwrap
from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass

tab = ('_' * 80) + '\n\n'


def unindent(text: str) -> str:
    """Remove indentation from text"""
    return textwrap.dedent(text).strip()


def format_help(help: str) -> str:
    """Format help text"""
    return tab + unindent(help) + '\n'


class FrameworkException(AssertionError, RuntimeError):
    pass


class Error(ABC, FrameworkException):
    """Base class for _known_ exceptions in this module.

    Instances of this class should have a nice help message explaining the error and how to fix it.
    """

    def __str__(self) -> str:
        if not self.__doc__:
            raise NotImplementedError(f'{self.__class__.__name__} has no docstring')
        return self.__doc__ + ' -> ' + ' '.join(str(arg) for arg in self.args if arg is not None)

    def help(self) -> str:
        """Return a string containing a help message for this error."""
        return format_help(self._help())

    @classmethod
    def default_help(cls) -> str:
        return format_help(
            """
                An unexpected error has occurred! Most likely it's a bug.

                Please, run the command again with `HEDERA_ANALYZER_DEBUG=1` and attach the output to the issue.
        """
        )

    @abstractmethod
    def _help(self) -> str: ...


@dataclass(repr=False)
class InvalidTokenIdError(Error):
    """Token ID is malformed"""

    token_id: str

    def _help(self) -> str:
        return f"""
            `{self.token_id}` is not a valid token ID.

            Token IDs consist of three dot-separated numbers: `shard.realm.num`, e.g. `0.0.731861`.
        """


class UpstreamError(Error):
    """Mirror node request failed"""

    url: str


@dataclass(repr=False)
class UpstreamTransientError(UpstreamError):
    """Mirror node is throttling requests"""

    url: str
    status: int
    retry_after: float | None = None

    def _help(self) -> str:
        return f"""
            Mirror node responded with HTTP {self.status} too many times in a row.

            URL: `{self.url}`

            Increase `mirror_node.http.ratelimit_sleep` or `mirror_node.http.request_interval` and try again later.
        """


@dataclass(repr=False)
class UpstreamFatalError(UpstreamError):
    """Mirror node request failed"""

    url: str
    msg: str
    status: int | None = None

    def _help(self) -> str:
        return f"""
            Mirror node request failed: {self.msg}

            URL: `{self.url}`

            Make sure that `mirror_node.url` is correct and the node is reachable.
        """


@dataclass(repr=False)
class InvalidRequestError(Error):
    """API returned an unexpected response"""

    msg: str
    url: str

    def _help(self) -> str:
        return f"""
            Unexpected response: {self.msg}

            URL: `{self.url}`

            Make sure that config is correct and you're calling the correct API.
        """


@dataclass(repr=False)
class DataNotFoundError(Error):
    """Data not found. Please analyze the token first."""

    token_id: str

    def _help(self) -> str:
        return f"""
            No persisted holders or transactions found for token `{self.token_id}`.

            Run `hedera-analyzer analyze {self.token_id}` or `POST /analyze` first.
        """


@dataclass(repr=False)
class PersistenceError(Error):
    """Failed to persist analysis results"""

    msg: str

    def _help(self) -> str:
        return f"""
            {self.msg}

            Check `storage` config section and make sure the target is writable.
        """


@dataclass(repr=False)
class ConfigurationError(Error):
    """Analyzer config is invalid"""

    msg: str

    def _help(self) -> str:
        return f"""
            {self.msg}

            See `hedera-analyzer config export` for the list of available options.
        """
