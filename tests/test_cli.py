from pathlib import Path

import pytest
from click.testing import CliRunner

from hedera_analyzer.cli import cli
from hedera_analyzer.exceptions import InvalidTokenIdError


def test_config_export(tmp_path: Path) -> None:
    config_path = tmp_path / 'analyzer.yaml'
    config_path.write_text('api:\n  port: 8080\n')

    result = CliRunner().invoke(cli, ['-c', str(config_path), 'config', 'export'])

    assert result.exit_code == 0, result.output
    assert 'port: 8080' in result.output
    assert 'holder_batch_size: 25' in result.output


def test_analyze_rejects_invalid_token_id(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ['analyze', 'not-a-token'])

    assert result.exit_code == 1
    assert isinstance(result.exception, InvalidTokenIdError)
