"""
Notification message formatting
Title, body and detail triples for workflow verdicts
"""
from typing import Dict, List, Tuple

from models.workflow import WorkflowOutcome

MessageParts = Tuple[str, str, Dict[str, str]]


class NotificationMessageFormatter:
    """Builds human-readable notification content from workflow outcomes"""

    def __init__(self, hostname: str, repository: str):
        self.hostname = hostname
        self.repository = repository

    def _details(self, **extra: str) -> Dict[str, str]:
        details = {'host': self.hostname, 'repository': self.repository}
        details.update(extra)
        return details

    def workflow_success(self, workflow: str, backends: int) -> MessageParts:
        title = f"✅ {workflow} Completed"
        body = f"resticflow {workflow.lower()} completed successfully on {self.hostname}"
        return title, body, self._details(backends=str(backends))

    def workflow_failure(self, workflow: str, outcome: WorkflowOutcome) -> MessageParts:
        failed = len(outcome.errors)
        title = f"❌ {workflow} Failed"
        body = f"resticflow {workflow.lower()} failed on {self.hostname} with {failed} error(s)"
        return title, body, self._details(errors=outcome.error_summary())

    def pre_hook_failure(self) -> MessageParts:
        title = "❌ Pre-backup Hook Failed"
        body = f"Backup on {self.hostname} was not started because the pre-backup hook failed"
        return title, body, self._details(step="pre-backup")

    def stale_locks(self, repositories: List[str]) -> MessageParts:
        affected = ", ".join(repositories)
        title = "🚨 CRITICAL: Stale Lock Detected!"
        body = (
            f"resticflow detected stale lock(s) on {self.hostname} that could NOT be released!\n\n"
            "With object-locked storage the repository stays BLOCKED until the retention period expires.\n\n"
            f"Affected repositories: {affected}\n"
            f"Host: {self.hostname}\n\n"
            "IMMEDIATE ACTION REQUIRED: Investigate why locks were not released."
        )
        details = {
            'host': self.hostname,
            'severity': 'critical',
            'repositories': affected,
            'issue': 'stale_lock',
        }
        return title, body, details
