"""
Shared fixtures: a recording fake engine, recording hooks and notification
provider, and an orchestrator factory wired to tmp_path state
"""
import os
import stat
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

import pytest

from models.errors import EngineExecutionError, HookError
from models.repository import (
    LockRecord,
    LockVerificationResult,
    RepositoryTarget,
    RepoStats,
    Snapshot,
)
from models.settings import BackendSettings, HookSettings, NotificationSettings, Settings
from services.console import ConsoleReporter
from services.deep_check import DeepCheckTracker
from services.hooks import HookRunner
from services.maintenance import MaintenanceContext, MaintenanceOrchestrator
from services.notification_service import Notifier
from services.process_lock import ProcessLock

HOSTNAME = "host-a"


class CallLog:
    """Ordered (repository, operation, kwargs) triples shared by every fake engine"""

    def __init__(self):
        self.calls: List[Tuple[str, str, Dict]] = []

    def add(self, repository: str, operation: str, **kwargs) -> None:
        self.calls.append((repository, operation, kwargs))

    def ops(self, repository: Optional[str] = None) -> List[str]:
        return [op for repo, op, _ in self.calls if repository is None or repo == repository]

    def sequence(self) -> List[Tuple[str, str]]:
        return [(repo, op) for repo, op, _ in self.calls]

    def kwargs(self, repository: str, operation: str) -> List[Dict]:
        return [kw for repo, op, kw in self.calls if repo == repository and op == operation]


class FakeEngine:
    """Stands in for ResticExecutor; fails the operations it is told to fail"""

    def __init__(self, target: RepositoryTarget, log: CallLog, failures: Set[Tuple[str, str]],
                 locks: Optional[Dict[str, List[LockRecord]]] = None, initialized: bool = True):
        self.target = target
        self.log = log
        self.failures = failures
        self.locks = locks if locks is not None else {}
        self.initialized = initialized

    @property
    def name(self) -> str:
        return self.target.name

    def _call(self, operation: str, **kwargs) -> str:
        self.log.add(self.name, operation, **kwargs)
        if (self.name, operation) in self.failures:
            raise EngineExecutionError(operation, 1, "command failed")
        return ""

    def backup(self, directories, tags=None, exclude_patterns=None, exclude_file="", hostname="", extra_args=None):
        return self._call('backup', directories=directories, tags=tags, hostname=hostname)

    def forget(self, retention, hostname="", group_by="", prune=False):
        return self._call('forget', retention=retention, hostname=hostname)

    def prune(self):
        return self._call('prune')

    def check(self, read_data=False, read_data_subset=""):
        return self._call('check', read_data=read_data, read_data_subset=read_data_subset)

    def copy(self, source, hostname="", snapshot_ids=None):
        return self._call('copy', source=source.name, hostname=hostname, snapshot_ids=snapshot_ids)

    def init(self):
        return self._call('init', password=self.target.password)

    def init_with_options(self, copy_chunker_params_from=None):
        source = copy_chunker_params_from.name if copy_chunker_params_from else None
        return self._call('init_with_options', source=source)

    def unlock(self):
        return self._call('unlock')

    def is_initialized(self) -> bool:
        return self.initialized

    def verify_no_stale_locks(self, current_hostname: str) -> LockVerificationResult:
        self.log.add(self.name, 'verify_locks')
        if (self.name, 'verify_locks') in self.failures:
            raise EngineExecutionError('list', 1, "command failed")
        result = LockVerificationResult(repository=self.name)
        for lock in self.locks.get(self.name, []):
            if lock.hostname == current_hostname:
                result.own_host_locks.append(lock)
            else:
                result.other_host_locks.append(lock)
        return result

    def list_snapshots(self, hostname=""):
        self.log.add(self.name, 'snapshots', hostname=hostname)
        return [Snapshot(id="abcdef0123456789", short_id="abcdef01", time=datetime(2024, 1, 2, 3, 4, 5),
                         hostname=HOSTNAME, paths=["/etc"], tags=["daily"])]

    def get_latest_snapshot(self):
        return self.list_snapshots()[0]

    def get_stats(self):
        return RepoStats(total_size=2048, total_file_count=12)

    def run_streaming(self, args):
        self.log.add(self.name, 'run', args=list(args))
        return 0


class EngineFarm:
    """Engine factory handing out FakeEngines that share one call log"""

    def __init__(self):
        self.log = CallLog()
        self.failures: Set[Tuple[str, str]] = set()
        self.locks: Dict[str, List[LockRecord]] = {}
        self.uninitialized: Set[str] = set()
        self.engines: Dict[str, FakeEngine] = {}

    def fail(self, repository: str, operation: str) -> None:
        self.failures.add((repository, operation))

    def __call__(self, target: RepositoryTarget) -> FakeEngine:
        engine = FakeEngine(target, self.log, self.failures, self.locks,
                            initialized=target.name not in self.uninitialized)
        self.engines[target.name] = engine
        return engine


class RecordingHooks(HookRunner):
    """Records hook invocations instead of spawning scripts"""

    def __init__(self, failing: Optional[Set[str]] = None):
        super().__init__(HookSettings(pre_backup="pre", post_backup="post", on_error="on-error",
                                      on_success="on-success"),
                         reporter=ConsoleReporter(quiet=True))
        self.failing = failing or set()
        self.calls: List[Tuple[str, Dict[str, str]]] = []

    def run(self, path, extra_env=None):
        self.calls.append((path, dict(extra_env or {})))
        if path in self.failing:
            raise HookError(path, "exit status 1")
        return ""

    def names(self) -> List[str]:
        return [path for path, _ in self.calls]


class RecordingProvider:
    name = "recording"

    def __init__(self):
        self.messages = []

    def send(self, message):
        self.messages.append(message)


def target(name: str, location: str, password: str = "secret", key: str = "") -> RepositoryTarget:
    return RepositoryTarget(name=name, location=location, password=password, aws_access_key_id=key)


@pytest.fixture
def settings(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return Settings(
        repository="/srv/restic/primary",
        password="primary-secret",
        directories=[str(data_dir)],
        backends={
            'b': BackendSettings(repository="/srv/restic/b", password="b-secret"),
            'c': BackendSettings(repository="/srv/restic/c", password="c-secret"),
        },
        copy_to_backends=['b', 'c'],
    )


@pytest.fixture
def farm():
    return EngineFarm()


@pytest.fixture
def hooks():
    return RecordingHooks()


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def make_orchestrator(tmp_path, farm, hooks, provider):
    """Build an orchestrator over the settings fixture's repositories"""

    def build(settings: Settings, notifications: Optional[NotificationSettings] = None,
              active: Optional[str] = None, hook_runner: Optional[HookRunner] = None,
              lock_path=None) -> MaintenanceOrchestrator:
        primary = target('primary', settings.repository, settings.password)
        backends = {
            name: target(name, backend.repository, backend.password)
            for name, backend in settings.backends.items()
        }
        notifications = notifications or NotificationSettings(enabled=True, notify_on_success=True)
        context = MaintenanceContext(
            settings=settings,
            primary=primary,
            secondaries=[backends[name] for name in settings.copy_to_backends],
            backends=backends,
            active=backends.get(active) if active else None,
            hostname=HOSTNAME,
            engine_factory=farm,
            tracker_factory=lambda location: DeepCheckTracker(location, tmp_path / "state"),
            hooks=hook_runner or hooks,
            notifier=Notifier(notifications, providers=[provider]),
            reporter=ConsoleReporter(quiet=True),
            process_lock=ProcessLock(lock_path or tmp_path / "resticflow.lock"),
        )
        return MaintenanceOrchestrator(context)

    return build


def write_script(path, body: str, executable: bool = True):
    """Write a shell script hook"""
    path.write_text("#!/bin/sh\n" + body + "\n")
    mode = 0o755 if executable else 0o644
    os.chmod(path, mode)
    return str(path)


def is_private(path) -> bool:
    return stat.S_IMODE(os.stat(path).st_mode) == 0o600
