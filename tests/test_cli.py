"""Command line interface wired to fake engines"""
import json
import os
import socket

import pytest
import yaml
from typer.testing import CliRunner

import app
import services.paths
from conftest import EngineFarm
from services.deep_check import state_file_name

runner = CliRunner()


@pytest.fixture
def farm():
    return EngineFarm()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv('HOME', str(home))
    monkeypatch.setenv('COLUMNS', '250')
    monkeypatch.setattr(services.paths, 'is_root', lambda: False)
    monkeypatch.setattr(app, 'configure_logging', lambda settings, verbose=False: None)
    for name in ('RESTIC_PASSWORD', 'AWS_ACCESS_KEY_ID', 'AWS_SECRET_ACCESS_KEY', 'SUDO_USER'):
        monkeypatch.delenv(name, raising=False)

    data_dir = tmp_path / "data"
    data_dir.mkdir()
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        'repository': "/srv/restic/primary",
        'password': "primary-secret",
        'directories': [str(data_dir)],
        'backends': {
            'b': {'repository': "/srv/restic/b", 'password': "b-secret"},
            'offsite': {'repository': "/srv/restic/offsite", 'password': "o-secret"},
        },
        'copy_to_backends': ['b'],
    }))
    os.chmod(path, 0o600)
    return str(path)


def invoke(config_file, farm, *args):
    return runner.invoke(app.app, ['--config', config_file] + list(args), obj={'engine_factory': farm})


def test_default_workflow(config_file, farm):
    result = invoke(config_file, farm)

    assert result.exit_code == 0, result.output
    assert farm.log.sequence() == [
        ('primary', 'backup'), ('primary', 'forget'),
        ('b', 'copy'), ('b', 'forget'),
    ]
    assert "All operations completed successfully" in result.output


def test_default_workflow_flags(config_file, farm):
    result = invoke(config_file, farm, '--prune', '--no-copy', '--no-backup', '--all-hosts')

    assert result.exit_code == 0, result.output
    assert farm.log.sequence() == [('primary', 'forget'), ('primary', 'prune')]
    assert farm.log.kwargs('primary', 'forget')[0]['hostname'] == ""


def test_default_workflow_requires_initialized_repository(config_file, farm):
    farm.uninitialized.add('primary')

    result = invoke(config_file, farm)

    assert result.exit_code == 1
    assert "resticflow init" in result.output
    assert farm.log.calls == []


def test_failure_exits_nonzero(config_file, farm):
    farm.fail('b', 'copy')

    result = invoke(config_file, farm, 'full')

    assert result.exit_code == 1
    assert "1 operation(s) failed" in result.output
    assert farm.log.ops('b') == ['copy']


def test_forget_primary_only(config_file, farm):
    result = invoke(config_file, farm, 'forget', '--primary-only')

    assert result.exit_code == 0, result.output
    assert farm.log.sequence() == [('primary', 'forget')]


def test_check_deep(config_file, farm):
    result = invoke(config_file, farm, 'check', '--deep', '--primary-only')

    assert result.exit_code == 0, result.output
    assert farm.log.kwargs('primary', 'check')[0]['read_data'] is True


def test_copy_to_named_backend(config_file, farm):
    result = invoke(config_file, farm, 'copy', '--to', 'offsite', 'abc123')

    assert result.exit_code == 0, result.output
    assert farm.log.kwargs('offsite', 'copy') == [{'source': 'primary', 'hostname': socket.gethostname(),
                                                   'snapshot_ids': ['abc123']}]


def test_backend_use_retargets_later_commands(config_file, farm):
    assert invoke(config_file, farm, 'backend', 'use', 'offsite').exit_code == 0

    result = invoke(config_file, farm, 'prune')

    assert result.exit_code == 0, result.output
    assert farm.log.sequence() == [('offsite', 'prune')]


def test_backend_option_overrides(config_file, farm):
    result = invoke(config_file, farm, '--backend', 'b', 'prune')

    assert result.exit_code == 0, result.output
    assert farm.log.sequence() == [('b', 'prune')]


def test_unknown_backend(config_file, farm):
    result = invoke(config_file, farm, 'backend', 'use', 'nope')

    assert result.exit_code == 1
    assert "not found" in result.output


def test_backend_list(config_file, farm):
    result = invoke(config_file, farm, 'backend', 'list')

    assert result.exit_code == 0, result.output
    assert "→ primary (active)" in result.output
    assert "b [copy]" in result.output


def test_init_all(config_file, farm):
    farm.uninitialized.update({'primary', 'b', 'offsite'})

    result = invoke(config_file, farm, 'init', '--all')

    assert result.exit_code == 0, result.output
    assert farm.log.sequence() == [('primary', 'init'), ('b', 'init_with_options'), ('offsite', 'init')]


def test_snapshots_json(config_file, farm):
    result = invoke(config_file, farm, '--json', 'snapshots', '--all')

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data[0]['short_id'] == "abcdef01"
    assert farm.log.kwargs('primary', 'snapshots') == [{'hostname': ""}]


def test_run_passthrough(config_file, farm):
    result = invoke(config_file, farm, 'run', 'snapshots', '--latest', '1')

    assert result.exit_code == 0, result.output
    assert farm.log.kwargs('primary', 'run') == [{'args': ['snapshots', '--latest', '1']}]


def test_env_fish(config_file, farm):
    result = invoke(config_file, farm, 'env', '--shell', 'fish')

    assert result.exit_code == 0, result.output
    assert "set -x RESTIC_REPOSITORY '/srv/restic/primary'" in result.output


def test_status_without_lock(config_file, farm):
    result = invoke(config_file, farm, 'status')

    assert result.exit_code == 0, result.output
    assert "No active lock" in result.output
    assert "last deep check never" in result.output


def test_insecure_config(config_file, farm):
    os.chmod(config_file, 0o644)

    result = invoke(config_file, farm, 'prune')

    assert result.exit_code == 1
    assert "insecure permissions" in result.output


def test_version():
    result = runner.invoke(app.app, ['version'])

    assert result.exit_code == 0
    assert result.output.startswith(f"resticflow {app.__version__}")


def test_format_bytes():
    assert app.format_bytes(512) == "512 B"
    assert app.format_bytes(2048) == "2.0 KiB"
    assert app.format_bytes(5 * 1024 ** 3) == "5.0 GiB"


def test_status_with_corrupt_deep_check_state(config_file, farm, tmp_path):
    state_dir = tmp_path / "home" / ".config" / "resticflow"
    state_dir.mkdir(parents=True)
    (state_dir / state_file_name("/srv/restic/primary")).write_text("last_check: [unclosed\n")

    result = invoke(config_file, farm, 'status')

    assert result.exit_code == 0, result.output
    assert "primary: last deep check unknown (unreadable state file), due on next check" in result.output
    assert "b: last deep check never" in result.output


def test_info_summarizes_configuration(config_file, farm):
    result = invoke(config_file, farm, 'info')

    assert result.exit_code == 0, result.output
    assert f"File:   {config_file}" in result.output
    assert "Source: flag --config" in result.output
    assert "Repository: /srv/restic/primary" in result.output
    assert "Password:   configured" in result.output
    assert "✓ b (auto-copy enabled)" in result.output
    assert "• offsite" in result.output
    assert "Keep daily:   7" in result.output
    assert "Interval: every 30 days" in result.output
    assert "No hooks configured" in result.output
    assert "Status: disabled" in result.output
    assert farm.log.calls == []


def test_config_list_marks_remembered_file(config_file, farm, tmp_path):
    config_dir = tmp_path / "home" / ".config" / "resticflow"
    config_dir.mkdir(parents=True)
    production = config_dir / "production.yaml"
    production.write_text(open(config_file).read())
    os.chmod(production, 0o600)
    (config_dir / "staging.yml").write_text("repository: /srv/restic\n")
    (config_dir / "notes.txt").write_text("not a config\n")
    (config_dir / state_file_name("/srv/restic/primary")).write_text("last_check: 2024-01-01\n")
    assert invoke(config_file, farm, 'config', 'use', str(production)).exit_code == 0

    result = invoke(config_file, farm, 'context', 'list')

    assert result.exit_code == 0, result.output
    assert f"→ {production} (active)" in result.output
    assert str(config_dir / "staging.yml") in result.output
    assert "notes.txt" not in result.output
    assert "context.yaml" not in result.output
    assert "deep_check_" not in result.output


def test_config_list_empty(config_file, farm):
    result = invoke(config_file, farm, 'config', 'list')

    assert result.exit_code == 0, result.output
    assert "No configuration files found" in result.output


def test_config_show(config_file, farm):
    assert invoke(config_file, farm, 'backend', 'use', 'offsite').exit_code == 0

    result = invoke(config_file, farm, 'config', 'show')

    assert result.exit_code == 0, result.output
    assert "Config:  (default)" in result.output
    assert "Backend: offsite" in result.output
