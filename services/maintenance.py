"""
Maintenance orchestrator
Sequences backup, forget, prune and check on the primary repository, then
copy + the same retention and maintenance on every copy backend, with hooks,
lock verification and one final notification per invocation
"""
import logging
import secrets
import socket
import string
from dataclasses import dataclass, field
from time import time
from typing import Callable, Dict, List, Optional, Tuple

from models.errors import ResticflowError, WorkflowError
from models.repository import RepositoryTarget
from models.settings import Settings
from models.workflow import CommandOptions, WorkflowOutcome, WorkflowPolicy
from services.console import ConsoleReporter
from services.deep_check import DeepCheckTracker
from services.hooks import HookRunner, NullHookRunner
from services.lock_verifier import LockVerifier
from services.notification_message_formatter import NotificationMessageFormatter
from services.notification_service import Notifier
from services.process_lock import ProcessLock
from services.restic import ResticExecutor

logger = logging.getLogger(__name__)

GENERATED_PASSWORD_LENGTH = 32

# Engine contract used by the orchestrator: name, target, backup, forget,
# prune, check, copy, init, init_with_options, is_initialized, unlock,
# verify_no_stale_locks. ResticExecutor is the production implementation.
EngineFactory = Callable[[RepositoryTarget], object]
TrackerFactory = Callable[[str], DeepCheckTracker]


@dataclass
class MaintenanceContext:
    """Everything one invocation needs, built once at startup"""
    settings: Settings
    primary: RepositoryTarget
    secondaries: List[RepositoryTarget] = field(default_factory=list)
    backends: Dict[str, RepositoryTarget] = field(default_factory=dict)
    active: Optional[RepositoryTarget] = None
    hostname: str = field(default_factory=socket.gethostname)
    dry_run: bool = False
    engine_factory: Optional[EngineFactory] = None
    tracker_factory: TrackerFactory = DeepCheckTracker
    hooks: Optional[HookRunner] = None
    notifier: Optional[Notifier] = None
    reporter: ConsoleReporter = field(default_factory=ConsoleReporter)
    process_lock: ProcessLock = field(default_factory=ProcessLock)

    def __post_init__(self):
        if self.engine_factory is None:
            self.engine_factory = self._default_engine
        if self.hooks is None:
            self.hooks = HookRunner(self.settings.hooks, dry_run=self.dry_run, reporter=self.reporter)
        if self.notifier is None:
            self.notifier = Notifier(self.settings.notifications)

    def _default_engine(self, target: RepositoryTarget) -> ResticExecutor:
        return ResticExecutor(
            target,
            dry_run=self.dry_run,
            binary=self.settings.restic_binary,
            cross_account_schemes=self.settings.cross_account_schemes,
        )

    @property
    def selected(self) -> RepositoryTarget:
        """Repository single-repository commands operate on"""
        return self.active or self.primary


class MaintenanceOrchestrator:
    """One entry point per top-level command, each returning an outcome or raising WorkflowError"""

    def __init__(self, context: MaintenanceContext):
        self.ctx = context
        self.settings = context.settings
        self.reporter = context.reporter
        self.formatter = NotificationMessageFormatter(context.hostname, context.primary.location)
        self._engines: Dict[Tuple[str, str], object] = {}

    # =========================================================================
    # **PLUMBING**
    # =========================================================================

    def engine(self, target: RepositoryTarget):
        """One engine per target for the lifetime of the invocation"""
        key = (target.name, target.location)
        if key not in self._engines:
            self._engines[key] = self.ctx.engine_factory(target)
        return self._engines[key]

    def _hooks(self, options: CommandOptions) -> HookRunner:
        if options.no_hooks:
            return NullHookRunner(reporter=self.reporter)
        return self.ctx.hooks

    def _host_filter(self, options: CommandOptions) -> str:
        return "" if options.all_hosts else self.ctx.hostname

    def _notifier(self, options: CommandOptions) -> Notifier:
        if options.notify_success and not self.ctx.notifier.on_success:
            self.ctx.notifier.on_success = True
        return self.ctx.notifier

    @staticmethod
    def _label(step: str, target: RepositoryTarget) -> str:
        if target.is_primary:
            return step.capitalize()
        preposition = "to" if step == "copy" else "on"
        return f"{step.capitalize()} {preposition} {target.name}"

    def _step(self, outcome: WorkflowOutcome, step: str, target: RepositoryTarget, action: Callable[[], object],
              done: str = "completed") -> bool:
        """Run one engine step, print its line and record it without raising"""
        label = self._label(step, target)
        start_time = time()
        try:
            action()
        except ResticflowError as e:
            self.reporter.error(f"{label} failed: {e}")
            outcome.record(step, target.name, e, time() - start_time)
            return False
        self.reporter.success(f"{label} {done}")
        outcome.record(step, target.name, None, time() - start_time)
        return True

    def _fire_on_error(self, outcome: WorkflowOutcome, hooks: HookRunner, error: Exception) -> None:
        if outcome.on_error_fired:
            return
        outcome.on_error_fired = True
        try:
            hooks.run_on_error(error)
        except ResticflowError as e:
            self.reporter.warning(f"On-error hook failed: {e}")

    # =========================================================================
    # **STEPS**
    # =========================================================================

    def _backup_phase(self, outcome: WorkflowOutcome, options: CommandOptions, policy: WorkflowPolicy) -> bool:
        """Pre-hook, backup, post-hook; returns False when the workflow must abort"""
        hooks = self._hooks(options)
        primary = self.ctx.primary

        try:
            hooks.run_pre_backup()
        except ResticflowError as e:
            self.reporter.error(f"Pre-backup hook failed: {e}")
            outcome.record('pre-backup', primary.name, e)
            self._fire_on_error(outcome, hooks, e)
            if policy.abort_on_pre_hook_failure:
                outcome.aborted = True
                title, body, details = self.formatter.pre_hook_failure()
                self._notifier(options).notify_error(title, body, e, details)
                return False
            self.reporter.warning("Skipping backup because the pre-backup hook failed")
            outcome.skip('backup', primary.name)
            return True

        tags = list(self.settings.default_tags)
        if options.tag:
            tags.append(options.tag)

        engine = self.engine(primary)
        backed_up = self._step(outcome, 'backup', primary, lambda: engine.backup(
            self.settings.directories,
            tags=tags,
            exclude_patterns=self.settings.exclude_patterns,
            exclude_file=self.settings.exclude_file,
            hostname=self.ctx.hostname,
        ))

        if backed_up:
            try:
                hooks.run_post_backup(True)
            except ResticflowError as e:
                self.reporter.warning(f"Post-backup hook failed: {e}")
        else:
            error = outcome.failed[-1].error
            try:
                hooks.run_post_backup(False, error)
            except ResticflowError as e:
                self.reporter.warning(f"Post-backup hook failed: {e}")
            self._fire_on_error(outcome, hooks, error)
        return True

    def _forget_step(self, outcome: WorkflowOutcome, target: RepositoryTarget, options: CommandOptions) -> bool:
        engine = self.engine(target)
        retention = self.settings.retention
        return self._step(outcome, 'forget', target,
                          lambda: engine.forget(retention, hostname=self._host_filter(options)))

    def _prune_step(self, outcome: WorkflowOutcome, target: RepositoryTarget) -> bool:
        engine = self.engine(target)
        return self._step(outcome, 'prune', target, engine.prune)

    def _check_step(self, outcome: WorkflowOutcome, target: RepositoryTarget, options: CommandOptions) -> bool:
        """Metadata check, promoted to a full data read when requested or due"""
        engine = self.engine(target)
        tracker = self.ctx.tracker_factory(target.location)
        deep = options.deep or tracker.should_run_deep_check(self.settings.deep_check_interval_days)
        subset = "" if deep else (options.read_data_subset or self.settings.check_read_data_subset)
        if deep:
            self.reporter.info(f"Running deep check (--read-data) on {target.name}")

        passed = self._step(outcome, 'check', target,
                            lambda: engine.check(read_data=deep, read_data_subset=subset), done="passed")
        if passed and deep:
            try:
                tracker.record_check()
            except OSError as e:
                self.reporter.warning(f"Could not record deep check for {target.name}: {e}")
        return passed

    def _sync_secondary(self, outcome: WorkflowOutcome, target: RepositoryTarget, options: CommandOptions,
                        policy: WorkflowPolicy) -> None:
        """Copy then identical retention and maintenance; a copy failure skips only this backend"""
        self.reporter.line(f"\n  ┌─ Backend: {target.name}")
        engine = self.engine(target)
        copied = self._step(outcome, 'copy', target,
                            lambda: engine.copy(self.ctx.primary, hostname=self._host_filter(options)))
        if not copied:
            self.reporter.line("  └─ ❌ Skipping maintenance due to copy failure")
            return

        if policy.forget:
            self._forget_step(outcome, target, options)
        if policy.prune:
            self._prune_step(outcome, target)
        if policy.check:
            self._check_step(outcome, target, options)
        self.reporter.line("  └─ ✅ Backend synchronized")

    def _verify_locks(self, outcome: WorkflowOutcome, targets: List[RepositoryTarget], options: CommandOptions) -> None:
        verifier = LockVerifier(self.ctx.hostname, self.reporter)
        stale = verifier.verify_all([self.engine(t) for t in targets])
        for error in stale:
            outcome.record('lock-verification', error.repository, error)
            outcome.stale_lock_repositories.append(error.repository)
        if stale:
            title, body, details = self.formatter.stale_locks(outcome.stale_lock_repositories)
            self._notifier(options).notify_critical(
                title, body,
                ResticflowError(f"stale locks detected on: {', '.join(outcome.stale_lock_repositories)}"),
                details,
            )

    def _finish(self, outcome: WorkflowOutcome, options: CommandOptions, title: str, backends: int,
                final_hooks: bool = True) -> WorkflowOutcome:
        """Summary line, final hook and exactly one notification"""
        self.reporter.line("\n" + "═" * 50)
        notifier = self._notifier(options)
        hooks = self._hooks(options)

        if outcome.succeeded:
            self.reporter.success("All operations completed successfully!")
            if final_hooks:
                try:
                    hooks.run_on_success()
                except ResticflowError as e:
                    self.reporter.warning(f"On-success hook failed: {e}")
            notifier.notify_success(*self.formatter.workflow_success(title, backends))
            return outcome

        error = WorkflowError(len(outcome.errors), outcome.errors)
        self.reporter.error(str(error))
        if final_hooks:
            self._fire_on_error(outcome, hooks, error)
        msg_title, body, details = self.formatter.workflow_failure(title, outcome)
        notifier.notify_error(msg_title, body, None, details)
        raise error

    def _copy_targets(self, names: Optional[List[str]] = None) -> List[RepositoryTarget]:
        if not names:
            return list(self.ctx.secondaries)
        targets = []
        for name in names:
            target = self.ctx.backends.get(name)
            if target is None:
                self.reporter.warning(f"Backend '{name}' not found, skipping")
                continue
            targets.append(target)
        return targets

    def _maintenance_targets(self, options: CommandOptions) -> List[RepositoryTarget]:
        """Targets for forget/prune/check commands"""
        if self.ctx.active is not None:
            return [self.ctx.active]
        if options.primary_only:
            return [self.ctx.primary]
        return [self.ctx.primary] + list(self.ctx.secondaries)

    # =========================================================================
    # **ENTRY POINTS**
    # =========================================================================

    def run_workflow(self, options: CommandOptions, policy: WorkflowPolicy) -> WorkflowOutcome:
        """Multi-step workflow shared by `full`, `backup` and the default command"""
        with self.ctx.process_lock:
            outcome = WorkflowOutcome()
            dry = " (DRY RUN)" if self.ctx.dry_run else ""
            self.reporter.banner(f"RESTICFLOW {policy.title.upper()}{dry}")
            if options.no_hooks:
                self.reporter.info("Skipping all hooks (--no-hooks flag set)")

            primary = self.ctx.primary

            if policy.backup:
                self.reporter.section("📦 BACKUP")
                if not self._backup_phase(outcome, options, policy):
                    raise WorkflowError(len(outcome.errors), outcome.errors)

            if policy.forget:
                self.reporter.section("🗑️  FORGET")
                self._forget_step(outcome, primary, options)

            if policy.prune:
                self.reporter.section("🧹 PRUNE")
                self._prune_step(outcome, primary)

            if policy.check:
                self.reporter.section("🔍 CHECK")
                self._check_step(outcome, primary, options)

            secondaries = list(self.ctx.secondaries) if policy.copy else []
            if policy.copy:
                self.reporter.section("📤 COPY & SYNC BACKENDS")
                if not secondaries:
                    self.reporter.info("No secondary backends configured, skipping copy")
                for target in secondaries:
                    self._sync_secondary(outcome, target, options, policy)

            if policy.verify_locks:
                self.reporter.section("🔐 LOCK VERIFICATION")
                self._verify_locks(outcome, [primary] + secondaries, options)

            return self._finish(outcome, options, policy.title, len(secondaries) + 1)

    def full(self, options: CommandOptions) -> WorkflowOutcome:
        return self.run_workflow(options, WorkflowPolicy.full(verify_locks=self.settings.verify_no_locks))

    def backup(self, options: CommandOptions) -> WorkflowOutcome:
        policy = WorkflowPolicy(
            forget=False, prune=False, check=False, copy=False,
            verify_locks=self.settings.verify_no_locks, title="Backup",
        )
        return self.run_workflow(options, policy)

    def _single_step(self, options: CommandOptions, step: str, runner: Callable[[WorkflowOutcome, RepositoryTarget], bool]) -> WorkflowOutcome:
        with self.ctx.process_lock:
            outcome = WorkflowOutcome()
            targets = self._maintenance_targets(options)
            for target in targets:
                runner(outcome, target)
            if self.settings.verify_no_locks:
                self._verify_locks(outcome, targets, options)
            return self._finish(outcome, options, step.capitalize(), len(targets), final_hooks=False)

    def forget(self, options: CommandOptions) -> WorkflowOutcome:
        return self._single_step(options, 'forget', lambda o, t: self._forget_step(o, t, options))

    def prune(self, options: CommandOptions) -> WorkflowOutcome:
        return self._single_step(options, 'prune', self._prune_step)

    def check(self, options: CommandOptions) -> WorkflowOutcome:
        return self._single_step(options, 'check', lambda o, t: self._check_step(o, t, options))

    def copy(self, options: CommandOptions, to: Optional[List[str]] = None,
             snapshot_ids: Optional[List[str]] = None) -> WorkflowOutcome:
        """Copy snapshots from the primary to the given or configured copy backends"""
        with self.ctx.process_lock:
            outcome = WorkflowOutcome()
            targets = self._copy_targets(to)
            if not targets:
                self.reporter.info("No copy backends configured")
            for target in targets:
                engine = self.engine(target)
                self._step(outcome, 'copy', target, lambda: engine.copy(
                    self.ctx.primary, hostname=self._host_filter(options), snapshot_ids=snapshot_ids))
            return self._finish(outcome, options, "Copy", len(targets), final_hooks=False)

    def init(self, backend: str = "", all_backends: bool = False) -> WorkflowOutcome:
        """Initialize the primary and/or backends; copy targets reuse the primary's chunker params"""
        with self.ctx.process_lock:
            outcome = WorkflowOutcome()
            if backend:
                target = self.ctx.backends.get(backend)
                if target is None:
                    raise ResticflowError(f"backend '{backend}' not found in configuration")
                targets = [target]
            elif all_backends:
                targets = [self.ctx.primary] + list(self.ctx.backends.values())
            else:
                targets = [self.ctx.primary]

            copy_names = {t.name for t in self.ctx.secondaries}
            for target in targets:
                self._init_target(outcome, target, chunker_source=target.name in copy_names)

            if outcome.errors:
                raise WorkflowError(len(outcome.errors), outcome.errors)
            return outcome

    def _init_target(self, outcome: WorkflowOutcome, target: RepositoryTarget, chunker_source: bool) -> None:
        if not target.password:
            password = generate_password()
            target = target.model_copy(update={'password': password})
            self._engines.pop((target.name, target.location), None)
            self.reporter.warning(f"No password configured for {target.name}, generated one:")
            self.reporter.line(f"    {password}")
            self.reporter.warning("Store it in your configuration now; it cannot be recovered")

        engine = self.engine(target)
        if engine.is_initialized():
            self.reporter.info(f"Repository {target.name} is already initialized")
            outcome.skip('init', target.name)
            return

        if chunker_source:
            self._step(outcome, 'init', target,
                       lambda: engine.init_with_options(copy_chunker_params_from=self.ctx.primary))
        else:
            self._step(outcome, 'init', target, engine.init)

    def unlock(self, force: bool = False, restic: bool = False, all_backends: bool = False,
               confirm: Optional[Callable[[str], bool]] = None) -> WorkflowOutcome:
        """Remove the local process lock and optionally repository locks"""
        outcome = WorkflowOutcome()
        lock = self.ctx.process_lock

        if lock.is_locked() or lock.path.exists():
            pid = lock.get_pid()
            self.reporter.warning(f"Lock file: {lock.path}")
            if pid is not None:
                self.reporter.line(f"   PID: {pid}")
                self.reporter.line(f"   Status: {lock.process_status()}")
            if force or confirm is None or confirm("Remove the local lock file?"):
                lock.force_unlock()
                self.reporter.success("Local lock removed")
            else:
                self.reporter.info("Local lock kept")
        else:
            self.reporter.info("No active local lock")

        if restic or all_backends:
            targets = [self.ctx.selected]
            if all_backends:
                targets.extend(t for t in self.ctx.backends.values() if t.name != self.ctx.selected.name)
            for target in targets:
                engine = self.engine(target)
                self._step(outcome, 'unlock', target, engine.unlock)

        if outcome.errors:
            raise WorkflowError(len(outcome.errors), outcome.errors)
        return outcome


def generate_password(length: int = GENERATED_PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))
