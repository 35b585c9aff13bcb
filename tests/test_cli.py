"""Tests for the command-line interface."""

import json

import click
import pytest
import yaml
from click.testing import CliRunner

from file_retrieval.cli import cli, load_specs


@pytest.fixture
def runner():
    return CliRunner()


class TestNextRun:

    def test_json_output(self, runner):
        result = runner.invoke(cli, [
            'next-run', '0 9 * * *', '--after', '2024-03-15T10:00:00Z', '--count', '2', '--json'
        ])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["runs"] == ["2024-03-16T09:00:00+00:00", "2024-03-17T09:00:00+00:00"]

    def test_local_time_column(self, runner):
        result = runner.invoke(cli, [
            'next-run', '0 9 * * *', '-z', 'America/New_York', '--after', '2024-03-15T00:00:00Z', '-n', '1'
        ])

        assert result.exit_code == 0, result.output
        assert "2024-03-15T13:00:00+00:00" in result.output
        assert "2024-03-15T09:00:00-04:00 America/New_York" in result.output

    @pytest.mark.parametrize("args", [
        ['next-run', 'not a cron'],
        ['next-run', '0 9 * * *', '--timezone', 'Mars/Olympus'],
        ['next-run', '0 9 * * *', '--after', 'yesterday'],
    ])
    def test_rejects_bad_input(self, runner, args):
        result = runner.invoke(cli, args)

        assert result.exit_code != 0


class TestValidate:

    def test_valid_file(self, runner, tmp_path, ftp_spec, https_spec):
        path = tmp_path / "configs.yaml"
        path.write_text(yaml.safe_dump({"configurations": [ftp_spec, https_spec]}))

        result = runner.invoke(cli, ['validate', str(path)])

        assert result.exit_code == 0, result.output
        assert "2/2 configurations valid" in result.output

    def test_invalid_file(self, runner, tmp_path, ftp_spec):
        broken = {**ftp_spec, "name": "Broken", "notifications": [], "schedule": {"cron_expression": "61 * * * *"}}
        path = tmp_path / "configs.yaml"
        path.write_text(yaml.safe_dump([ftp_spec, broken]))

        result = runner.invoke(cli, ['validate', str(path)])

        assert result.exit_code == 1
        assert "❌ Broken" in result.output
        assert "1/2 configurations valid" in result.output

    def test_empty_file(self, runner, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        result = runner.invoke(cli, ['validate', str(path)])

        assert result.exit_code == 1
        assert "No configurations found" in result.output


class TestLoadSpecs:

    def test_single_mapping(self, tmp_path, ftp_spec):
        path = tmp_path / "one.yaml"
        path.write_text(yaml.safe_dump(ftp_spec))

        assert load_specs(str(path)) == [ftp_spec]

    def test_scalar_rejected(self, tmp_path):
        path = tmp_path / "scalar.yaml"
        path.write_text("just a string\n")

        with pytest.raises(click.ClickException):
            load_specs(str(path))


class TestRun:

    def test_memory_run_with_seed(self, runner, tmp_path, ftp_spec, monkeypatch):
        monkeypatch.setenv("FILE_RETRIEVAL_SECRET_FTP_PARTNER_A", "unused")
        path = tmp_path / "seed.yaml"
        path.write_text(yaml.safe_dump([ftp_spec]))

        result = runner.invoke(cli, [
            'run', '--memory', '--seed', str(path), '--tenant', 'tenant-a',
            '--poll-interval', '1', '--duration', '0.2'
        ])

        assert result.exit_code == 0, result.output
        assert "Seeded 1 configurations for tenant tenant-a" in result.output
        assert "Status: running" in result.output
        assert "Stopped after 1 ticks" in result.output

    def test_invalid_option_override(self, runner):
        result = runner.invoke(cli, ['run', '--memory', '--poll-interval', '0', '--duration', '0.1'])

        assert result.exit_code != 0
