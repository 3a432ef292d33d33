"""YAML config files: loading, environment placeholders and dumping.

Files are parsed first; `${VAR}` and `${VAR:-default}` placeholders are then resolved inside string values only,
so neither comments nor variable values can change the document structure. Top-level sections of later files
replace the same sections of earlier ones.
"""

from __future__ import annotations

import logging
import os
import re
from io import StringIO
from typing import TYPE_CHECKING
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from hedera_analyzer.exceptions import ConfigurationError

if TYPE_CHECKING:
    from pathlib import Path

PLACEHOLDER_REGEX = re.compile(r'\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}')

_logger = logging.getLogger(__name__)

_loader = YAML(typ='safe')
_dumper = YAML()
_dumper.default_flow_style = False
_dumper.indent(mapping=2, sequence=4, offset=2)


class Placeholders:
    """Resolves `${VAR}` placeholders and remembers which variables were used.

    With `unsafe` unset, actual environment is ignored and defaults are used instead; this is how configs are
    exported without leaking secrets.
    """

    def __init__(self, unsafe: bool) -> None:
        self.unsafe = unsafe
        self.used: dict[str, str] = {}

    def resolve(self, value: Any) -> Any:
        if isinstance(value, str):
            return PLACEHOLDER_REGEX.sub(self._replace, value)
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        if isinstance(value, dict):
            return {key: self.resolve(item) for key, item in value.items()}
        return value

    def _replace(self, match: re.Match[str]) -> str:
        name, default = match.group('name'), match.group('default')
        value = os.environ.get(name) if self.unsafe else None
        if value is None:
            value = default
        if value is None:
            if self.unsafe:
                raise ConfigurationError(f'Environment variable `{name}` is not set')
            value = ''
        self.used[name] = value
        return value


def load_file(path: Path) -> dict[str, Any]:
    _logger.debug('Loading config file `%s`', path)
    if not path.is_file():
        raise ConfigurationError(f'Config file `{path}` is missing.')
    try:
        content = _loader.load(path.read_text(encoding='utf-8'))
    except (OSError, UnicodeError) as e:
        raise ConfigurationError(f'Config file `{path}` is not readable: {e}') from e
    except YAMLError as e:
        raise ConfigurationError(f'Config file `{path}` is not a valid YAML: {e}') from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(f'Config file `{path}` must contain a mapping of sections')
    return content


def load_configs(paths: list[Path], unsafe: bool = True) -> tuple[dict[str, Any], dict[str, str]]:
    """Merge config files and resolve placeholders; returns config and variables used"""
    placeholders = Placeholders(unsafe)
    config: dict[str, Any] = {}
    for path in paths:
        config.update(placeholders.resolve(load_file(path)))
    return config, placeholders.used


def _drop_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _drop_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_none(v) for v in value if v is not None]
    return value


def dump(value: dict[str, Any]) -> str:
    buffer = StringIO()
    _dumper.dump(_drop_none(value), buffer)
    return buffer.getvalue()
