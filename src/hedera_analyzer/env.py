from os import getenv
from pathlib import Path

PREFIX = 'HEDERA_ANALYZER_'


def get_bool(key: str) -> bool:
    return (getenv(key) or '').lower() in ('1', 'y', 'yes', 't', 'true', 'on')


def get_path(key: str) -> Path | None:
    value = getenv(key)
    if value is None:
        return None
    return Path(value)


def set_test() -> None:
    global TEST
    TEST = True


CONFIG_PATH: Path | None = get_path(f'{PREFIX}CONFIG')
DEBUG: bool = get_bool(f'{PREFIX}DEBUG')
JSON_LOG: bool = get_bool(f'{PREFIX}JSON_LOG')
TEST: bool = get_bool(f'{PREFIX}TEST')
