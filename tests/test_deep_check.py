"""Deep check interval tracking"""
from datetime import datetime, timedelta

import yaml

from conftest import is_private
from services.deep_check import DeepCheckTracker, state_file_name

REPO = "s3:s3.amazonaws.com/bucket/restic"


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def test_state_file_name_is_stable():
    assert state_file_name(REPO) == state_file_name(REPO)
    assert state_file_name(REPO) != state_file_name("/srv/restic/other")
    assert state_file_name(REPO).startswith("deep_check_")
    assert state_file_name(REPO).endswith(".yaml")


def test_no_state_means_due(tmp_path):
    assert DeepCheckTracker(REPO, tmp_path).should_run_deep_check(30) is True


def test_disabled_interval(tmp_path):
    assert DeepCheckTracker(REPO, tmp_path).should_run_deep_check(0) is False


def test_due_exactly_at_interval(tmp_path):
    clock = Clock(datetime(2024, 1, 1, 12, 0))
    tracker = DeepCheckTracker(REPO, tmp_path, clock=clock)
    tracker.record_check()

    clock.now = datetime(2024, 1, 31, 11, 59)
    assert tracker.should_run_deep_check(30) is False
    assert tracker.days_until_next(30) == 1

    clock.now = datetime(2024, 1, 31, 12, 0)
    assert tracker.should_run_deep_check(30) is True
    assert tracker.days_until_next(30) is None


def test_recorded_check_is_not_due(tmp_path):
    tracker = DeepCheckTracker(REPO, tmp_path)
    tracker.record_check()

    assert tracker.should_run_deep_check(30) is False


def test_state_for_other_repository_is_ignored(tmp_path):
    tracker = DeepCheckTracker(REPO, tmp_path)
    tracker.path.parent.mkdir(parents=True, exist_ok=True)
    tracker.path.write_text(yaml.safe_dump({
        'repository': "/srv/restic/other",
        'last_check': (datetime.now() - timedelta(days=1)).isoformat(),
    }))

    assert tracker.last_check() is None
    assert tracker.should_run_deep_check(30) is True


def test_unreadable_state_means_due(tmp_path):
    tracker = DeepCheckTracker(REPO, tmp_path)
    tracker.path.write_text("repository: [unclosed\n")

    assert tracker.should_run_deep_check(30) is True


def test_state_file_is_private(tmp_path):
    state_dir = tmp_path / "state"
    tracker = DeepCheckTracker(REPO, state_dir)
    tracker.record_check()

    assert is_private(tracker.path)
    assert (state_dir.stat().st_mode & 0o777) == 0o700
    assert yaml.safe_load(tracker.path.read_text())['repository'] == REPO
