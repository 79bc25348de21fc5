"""Hook runner against real shell scripts"""
import pytest

from conftest import write_script
from models.errors import HookError, HookNotExecutableError
from models.settings import HookSettings
from services.console import ConsoleReporter
from services.hooks import HookRunner, NullHookRunner


def runner(hooks=None, **kwargs):
    return HookRunner(hooks or HookSettings(), reporter=ConsoleReporter(quiet=True), **kwargs)


def test_unconfigured_hook_is_skipped():
    assert runner().run("") == ""


def test_missing_hook_is_skipped(tmp_path):
    assert runner().run(str(tmp_path / "absent.sh")) == ""


def test_not_executable(tmp_path):
    path = write_script(tmp_path / "hook.sh", "echo hi", executable=False)

    with pytest.raises(HookNotExecutableError, match="chmod \\+x"):
        runner().run(path)


def test_output_keeps_stream_interleaving(tmp_path):
    path = write_script(tmp_path / "hook.sh", "echo one\necho two >&2\necho three")

    assert runner().run(path) == "one\ntwo\nthree\n"


def test_undecodable_output_is_replaced(tmp_path):
    path = write_script(tmp_path / "hook.sh", "printf '\\377\\376 caf\\351\\n'\nprintf 'bad \\351 file\\n' >&2\nexit 3")

    with pytest.raises(HookError) as exc:
        runner().run(path)

    assert "exit status 3" in str(exc.value)
    assert exc.value.output == "\ufffd\ufffd caf\ufffd\nbad \ufffd file\n"


def test_failure_carries_output(tmp_path):
    path = write_script(tmp_path / "hook.sh", "echo 'database dump failed' >&2\nexit 3")

    with pytest.raises(HookError) as exc:
        runner().run(path)

    assert "exit status 3" in str(exc.value)
    assert exc.value.output == "database dump failed\n"


def test_environment_precedence(tmp_path, monkeypatch):
    monkeypatch.setenv('X', 'process')
    monkeypatch.setenv('Z', 'process')
    path = write_script(tmp_path / "hook.sh", 'echo "$X $Y $Z"')

    output = runner(env={'X': 'runner', 'Y': 'runner'}).run(path, {'X': 'extra'})

    assert output == "extra runner process\n"


def test_dry_run_spawns_nothing(tmp_path):
    marker = tmp_path / "ran"
    path = write_script(tmp_path / "hook.sh", f"touch {marker}")

    assert runner(dry_run=True).run(path) == ""
    assert not marker.exists()


def test_dry_run_tolerates_missing_exec_bit(tmp_path):
    path = write_script(tmp_path / "hook.sh", "echo hi", executable=False)

    assert runner(dry_run=True).run(path) == ""


def test_post_backup_reports_status(tmp_path):
    path = write_script(tmp_path / "post.sh", 'echo "$BACKUP_STATUS|$BACKUP_ERROR"')
    hooks = runner(HookSettings(post_backup=path))

    assert hooks.run_post_backup(True) == "success|\n"
    assert hooks.run_post_backup(False, RuntimeError("disk full")) == "failure|disk full\n"


def test_on_error_receives_error(tmp_path):
    path = write_script(tmp_path / "err.sh", 'echo "$ERROR"')

    assert runner(HookSettings(on_error=path)).run_on_error(RuntimeError("2 operation(s) failed")) == "2 operation(s) failed\n"


def test_null_runner_runs_nothing(tmp_path):
    marker = tmp_path / "ran"
    path = write_script(tmp_path / "hook.sh", f"touch {marker}")
    hooks = NullHookRunner(HookSettings(pre_backup=path), reporter=ConsoleReporter(quiet=True))

    assert hooks.run_pre_backup() == ""
    assert not marker.exists()
