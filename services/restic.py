"""
Restic Engine Adapter
Translates structured operation requests into restic invocations against one
repository and turns exit codes and JSON output into typed results
"""

import os
import json
import logging
import tempfile
from contextlib import contextmanager
from typing import Dict, List, Optional, Iterator

from pydantic import ValidationError

from models.errors import CrossAccountError, EngineExecutionError, ResticflowError
from models.repository import (
    LockRecord,
    LockVerificationResult,
    RepositoryTarget,
    RepoStats,
    Snapshot,
)
from models.settings import RetentionPolicy
from services.execution import CommandExecutionService, ExecutionResult
from services.restic_argument_builder import ResticArgumentBuilder

logger = logging.getLogger(__name__)

RESTIC_DOCS_SCRIPTING = "https://restic.readthedocs.io/en/latest/075_scripting.html"
SECRET_FILE_PREFIX = "resticflow-pwd-"
DEFAULT_CROSS_ACCOUNT_SCHEMES = ("s3:",)

EXIT_CODE_DESCRIPTIONS = {
    0: "success",
    1: "command failed",
    2: "runtime error",
    3: "could not read some source data",
    10: "repository does not exist",
    11: "failed to lock repository",
    12: "wrong password",
    130: "interrupted",
}


def describe_exit_code(code: int) -> str:
    """Human-readable description of a restic exit code"""
    return EXIT_CODE_DESCRIPTIONS.get(code, f"unknown error - see {RESTIC_DOCS_SCRIPTING}")


def is_cross_account(source: RepositoryTarget, destination: RepositoryTarget, schemes=DEFAULT_CROSS_ACCOUNT_SCHEMES) -> bool:
    """Both repositories on the same object-storage scheme with distinct non-empty access keys"""
    for scheme in schemes:
        if source.uses_scheme(scheme) and destination.uses_scheme(scheme):
            src_key = source.aws_access_key_id
            dst_key = destination.aws_access_key_id
            return bool(src_key) and bool(dst_key) and src_key != dst_key
    return False


@contextmanager
def secret_file(secret: str) -> Iterator[str]:
    """Owner-only temporary file holding a secret, removed on every exit path"""
    fd, path = tempfile.mkstemp(prefix=SECRET_FILE_PREFIX)
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, 'w') as handle:
            handle.write(secret)
        yield path
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


# =============================================================================
# RESTIC EXECUTOR - One repository, one restic invocation per operation
# =============================================================================

class ResticExecutor:
    """Runs restic subcommands against a single repository target"""

    def __init__(
        self,
        target: RepositoryTarget,
        dry_run: bool = False,
        binary: str = "restic",
        cross_account_schemes: Optional[List[str]] = None,
        runner: Optional[CommandExecutionService] = None,
    ):
        self.target = target
        self.dry_run = dry_run
        self.binary = binary
        self.cross_account_schemes = tuple(cross_account_schemes or DEFAULT_CROSS_ACCOUNT_SCHEMES)
        self.runner = runner or CommandExecutionService()

    @property
    def name(self) -> str:
        return self.target.name

    # -------------------------------------------------------------------------
    # process plumbing
    # -------------------------------------------------------------------------

    def environment(self, aws_override: Optional[RepositoryTarget] = None) -> Dict[str, str]:
        return CommandExecutionService.build_environment(
            ResticArgumentBuilder.build_environment(self.target, aws_override)
        )

    def _secrets(self, extra: Optional[RepositoryTarget] = None) -> List[str]:
        values = [self.target.password, self.target.aws_secret_access_key]
        if extra is not None:
            values.extend([extra.password, extra.aws_secret_access_key])
        return [v for v in values if v]

    def _execute(self, args: List[str], aws_override: Optional[RepositoryTarget] = None) -> ExecutionResult:
        command = [self.binary] + args
        return self.runner.execute(
            command,
            env=self.environment(aws_override),
            secrets=self._secrets(aws_override),
        )

    def run(self, args: List[str], aws_override: Optional[RepositoryTarget] = None) -> str:
        """Run a subcommand and raise EngineExecutionError on nonzero exit"""
        result = self._execute(args, aws_override)
        if not result.success:
            description = result.spawn_error or describe_exit_code(result.returncode)
            logger.error(f"restic {args[0]} on {self.name} failed: exit {result.returncode} ({description})")
            if result.stderr:
                logger.debug(result.stderr.strip())
            raise EngineExecutionError(args[0], result.returncode, description, result.stderr.strip())
        return result.stdout

    def run_streaming(self, args: List[str]) -> int:
        """Passthrough invocation with the terminal attached, returns the exit code"""
        result = self.runner.execute_streaming(
            [self.binary] + args, env=self.environment(), secrets=self._secrets()
        )
        return result.returncode

    def _simulate(self, args: List[str]) -> None:
        print(f"[DRY RUN] Would run: {self.binary} {' '.join(args)}")
        logger.info(f"[DRY RUN] {self.name}: {self.binary} {args[0]}")

    def _decode(self, command: str, output: str):
        try:
            return json.loads(output)
        except ValueError as e:
            raise ResticflowError(f"failed to parse restic {command} output: {e}") from e

    @staticmethod
    def _records(model, items: list, kind: str) -> list:
        """Validate decoded JSON items, reporting schema drift as a resticflow error"""
        try:
            return [model.model_validate(item) for item in items]
        except (ValidationError, TypeError) as e:
            raise ResticflowError(f"unexpected {kind} record: {e}") from e

    # -------------------------------------------------------------------------
    # maintenance operations
    # -------------------------------------------------------------------------

    def backup(
        self,
        directories: List[str],
        tags: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
        exclude_file: str = "",
        hostname: str = "",
        extra_args: Optional[List[str]] = None,
    ) -> str:
        args = ResticArgumentBuilder.build_backup_args(
            directories, tags, exclude_patterns, exclude_file, hostname, extra_args, self.dry_run
        )
        return self.run(args)

    def forget(self, retention: RetentionPolicy, hostname: str = "", group_by: str = "", prune: bool = False) -> str:
        args = ResticArgumentBuilder.build_forget_args(retention, hostname, group_by, prune, self.dry_run)
        return self.run(args)

    def prune(self) -> str:
        return self.run(ResticArgumentBuilder.build_prune_args(self.dry_run))

    def check(self, read_data: bool = False, read_data_subset: str = "") -> str:
        return self.run(ResticArgumentBuilder.build_check_args(read_data, read_data_subset))

    def copy(self, source: RepositoryTarget, hostname: str = "", snapshot_ids: Optional[List[str]] = None) -> str:
        """Copy snapshots from source into this repository

        Rejects same-scheme repositories with different access keys before
        any process is started
        """
        if is_cross_account(source, self.target, self.cross_account_schemes):
            raise CrossAccountError(source.location, self.target.location)

        aws_override = source if self._is_object_storage(source) else None
        with self._source_password_file(source) as password_file:
            args = ResticArgumentBuilder.build_copy_args(source.location, hostname, snapshot_ids, password_file)
            if self.dry_run:
                self._simulate(args)
                return ""
            return self.run(args, aws_override)

    def init(self) -> str:
        args = ResticArgumentBuilder.build_init_args()
        if self.dry_run:
            self._simulate(args)
            return ""
        return self.run(args)

    def init_with_options(self, copy_chunker_params_from: Optional[RepositoryTarget] = None) -> str:
        """Initialize, optionally copying chunker parameters from another repository"""
        if copy_chunker_params_from is None:
            return self.init()

        source = copy_chunker_params_from
        aws_override = source if (source.aws_access_key_id or source.aws_secret_access_key) else None
        with self._source_password_file(source) as password_file:
            args = ResticArgumentBuilder.build_init_args(source.location, password_file)
            if self.dry_run:
                self._simulate(args)
                return ""
            return self.run(args, aws_override)

    def unlock(self) -> str:
        args = ['unlock']
        if self.dry_run:
            self._simulate(args)
            return ""
        return self.run(args)

    # -------------------------------------------------------------------------
    # queries
    # -------------------------------------------------------------------------

    def is_initialized(self) -> bool:
        """Existence check; any failure means not initialized"""
        try:
            self.run(['snapshots', '--json', '-q'])
        except ResticflowError:
            return False
        return True

    def list_snapshots(self, hostname: str = "") -> List[Snapshot]:
        args = ['snapshots', '--json']
        if hostname:
            args.extend(['--host', hostname])
        data = self._decode('snapshots', self.run(args) or "[]")
        return self._records(Snapshot, data or [], 'snapshot')

    def get_latest_snapshot(self) -> Optional[Snapshot]:
        data = self._decode('snapshots', self.run(['snapshots', '--json', '--latest', '1']) or "[]")
        if not data:
            return None
        return self._records(Snapshot, data[-1:], 'snapshot')[0]

    def get_stats(self) -> RepoStats:
        data = self._decode('stats', self.run(['stats', '--json']))
        return self._records(RepoStats, [data], 'stats')[0]

    def list_locks(self) -> List[LockRecord]:
        """Current locks; restic prints nothing at all when there are none"""
        output = self.run(['list', 'locks', '--json']).strip()
        if not output:
            return []
        try:
            data = json.loads(output)
        except ValueError:
            # Older restic versions print one lock ID per line
            return [self._cat_lock(lock_id) for lock_id in output.split()]
        if isinstance(data, dict):
            data = [data]
        return self._records(LockRecord, data, 'lock')

    def _cat_lock(self, lock_id: str) -> LockRecord:
        data = self._decode('cat lock', self.run(['cat', 'lock', lock_id]))
        return self._records(LockRecord, [data], 'lock')[0]

    def verify_no_stale_locks(self, current_hostname: str) -> LockVerificationResult:
        """Split current locks into this host's and other hosts'"""
        result = LockVerificationResult(repository=self.name)
        for lock in self.list_locks():
            if lock.hostname == current_hostname:
                result.own_host_locks.append(lock)
            else:
                result.other_host_locks.append(lock)
        return result

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    def _is_object_storage(self, target: RepositoryTarget) -> bool:
        return any(target.uses_scheme(scheme) for scheme in self.cross_account_schemes)

    @contextmanager
    def _source_password_file(self, source: RepositoryTarget) -> Iterator[str]:
        if not source.password:
            yield ""
            return
        with secret_file(source.password) as path:
            yield path


def get_restic_version(binary: str = "restic") -> str:
    result = CommandExecutionService().execute([binary, 'version'])
    if not result.success:
        raise EngineExecutionError('version', result.returncode, result.spawn_error or describe_exit_code(result.returncode))
    return result.stdout.strip()
