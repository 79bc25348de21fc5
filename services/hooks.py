"""
Hook runner
Executes user-supplied lifecycle scripts (pre-backup, post-backup, on-error,
on-success) with status passed through environment variables
"""
import os
import stat
import logging
from typing import Dict, Optional

from models.errors import HookError, HookNotExecutableError
from models.settings import HookSettings
from services.console import ConsoleReporter
from services.execution import CommandExecutionService, CommandObfuscationService

logger = logging.getLogger(__name__)


class HookRunner:
    """Runs hook scripts; a missing or unconfigured hook is not an error"""

    def __init__(
        self,
        hooks: Optional[HookSettings] = None,
        dry_run: bool = False,
        env: Optional[Dict[str, str]] = None,
        reporter: Optional[ConsoleReporter] = None,
        executor: Optional[CommandExecutionService] = None,
    ):
        self.hooks = hooks or HookSettings()
        self.dry_run = dry_run
        self.env = dict(env or {})
        self.reporter = reporter or ConsoleReporter()
        self.executor = executor or CommandExecutionService()

    def run(self, path: str, extra_env: Optional[Dict[str, str]] = None) -> str:
        """Execute one hook and return its interleaved stdout and stderr"""
        if not path:
            return ""

        try:
            mode = os.stat(path).st_mode
        except FileNotFoundError:
            logger.debug(f"Hook {path} not found, skipping")
            return ""
        except OSError as e:
            if self.dry_run:
                self.reporter.line(f"🪝 [DRY-RUN] Would execute hook: {path}")
                return ""
            raise HookError(path, f"cannot access hook: {e}") from e

        if self.dry_run:
            if not mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
                logger.warning(f"Hook {path} is not executable and would fail")
            self.reporter.line(f"🪝 [DRY-RUN] Would execute hook: {path}")
            return ""

        if not mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
            raise HookNotExecutableError(path)

        self.reporter.line(f"🪝 Executing hook: {path}")
        logger.info(f"Executing hook: {path}")

        env = CommandExecutionService.build_environment(self.env, extra_env)
        if extra_env:
            logger.debug(f"Hook environment: {CommandObfuscationService.obfuscate_environment(extra_env)}")
        result = self.executor.execute([path], env=env, merge_stderr=True)
        output = result.stdout

        if not result.success:
            self.reporter.error(f"Hook failed: {path}")
            reason = result.spawn_error or f"exit status {result.returncode}"
            raise HookError(path, reason, output)

        self.reporter.line(f"✅ Hook completed: {path}")
        logger.info(f"Hook completed: {path}")
        return output

    # **LIFECYCLE CALLS**

    def run_pre_backup(self) -> str:
        return self.run(self.hooks.pre_backup)

    def run_post_backup(self, success: bool, backup_error: Optional[Exception] = None) -> str:
        env = {'BACKUP_STATUS': 'success' if success else 'failure'}
        if not success and backup_error is not None:
            env['BACKUP_ERROR'] = str(backup_error)
        return self.run(self.hooks.post_backup, env)

    def run_on_error(self, error: Exception) -> str:
        return self.run(self.hooks.on_error, {'ERROR': str(error)})

    def run_on_success(self) -> str:
        return self.run(self.hooks.on_success)


class NullHookRunner(HookRunner):
    """Hook runner used with --no-hooks"""

    def run(self, path: str, extra_env: Optional[Dict[str, str]] = None) -> str:
        return ""
