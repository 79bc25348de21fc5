"""
Workflow models
Options accepted by orchestrator entry points and the per-run outcome ledger
"""
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class CommandOptions:
    """Options shared by every orchestrator entry point"""
    tag: str = ""
    dry_run: bool = False
    deep: bool = False
    primary_only: bool = False
    all_hosts: bool = False
    no_hooks: bool = False
    read_data_subset: str = ""
    notify_success: bool = False


@dataclass
class WorkflowPolicy:
    """Which steps a multi-step workflow runs and how it reacts to a pre-backup hook failure"""
    backup: bool = True
    forget: bool = True
    prune: bool = True
    check: bool = True
    copy: bool = True
    verify_locks: bool = False
    abort_on_pre_hook_failure: bool = True
    title: str = "Full Maintenance"

    @classmethod
    def full(cls, verify_locks: bool = False) -> 'WorkflowPolicy':
        return cls(verify_locks=verify_locks)

    @classmethod
    def default(
        cls,
        prune: bool = False,
        check: bool = False,
        no_backup: bool = False,
        no_forget: bool = False,
        no_prune: bool = False,
        no_check: bool = False,
        no_copy: bool = False,
        verify_locks: bool = False,
    ) -> 'WorkflowPolicy':
        return cls(
            backup=not no_backup,
            forget=not no_forget,
            prune=prune and not no_prune,
            check=check and not no_check,
            copy=not no_copy,
            verify_locks=verify_locks,
            abort_on_pre_hook_failure=False,
            title="Backup",
        )


@dataclass
class StepResult:
    step: str
    target: str
    error: Optional[Exception] = None
    skipped: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class WorkflowOutcome:
    """Ordered ledger of step results for one invocation"""
    steps: List[StepResult] = field(default_factory=list)
    stale_lock_repositories: List[str] = field(default_factory=list)
    on_error_fired: bool = False
    aborted: bool = False

    def record(self, step: str, target: str, error: Optional[Exception] = None, duration: float = 0.0) -> StepResult:
        result = StepResult(step=step, target=target, error=error, duration_seconds=duration)
        self.steps.append(result)
        return result

    def skip(self, step: str, target: str) -> StepResult:
        result = StepResult(step=step, target=target, skipped=True)
        self.steps.append(result)
        return result

    @property
    def errors(self) -> List[Exception]:
        return [s.error for s in self.steps if s.error is not None]

    @property
    def failed(self) -> List[StepResult]:
        return [s for s in self.steps if s.error is not None]

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def error_summary(self) -> str:
        return "; ".join(str(e) for e in self.errors)
