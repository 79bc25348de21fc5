"""
Execution Service
Process spawning and secret masking for every external command resticflow runs
"""
import os
import re
import subprocess
import logging
from typing import List, Dict, Optional
from pydantic import BaseModel

logger = logging.getLogger(__name__)


# =============================================================================
# **DATA STRUCTURES** - Spawn options and process results
# =============================================================================

class ExecutionConfig(BaseModel):
    """Process spawning options; no timeout by default"""
    timeout: Optional[int] = None
    capture_output: bool = True


class ExecutionResult(BaseModel):
    """Exit status and captured output of one process"""
    returncode: int
    stdout: str = ""
    stderr: str = ""
    spawn_error: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


# =============================================================================
# **SECRET MASKING** - Keeps passwords out of debug logs
# =============================================================================

class CommandObfuscationService:
    """Command obfuscation - ONLY handles secret masking for logging"""

    PASSWORD_PATTERNS = [
        r'(RESTIC_PASSWORD=)([^\s]+)',
        r'(AWS_SECRET_ACCESS_KEY=)([^\s]+)',
        r'(--password[=\s]+)([^\s]+)',
    ]

    SENSITIVE_KEYS = ('PASSWORD', 'SECRET', 'TOKEN')

    @classmethod
    def obfuscate_command(cls, command: List[str], secrets: Optional[List[str]] = None) -> List[str]:
        """Mask known secrets and password-looking arguments"""
        obfuscated = []
        for part in command:
            masked = part
            for secret in secrets or []:
                if secret and secret in masked:
                    masked = masked.replace(secret, '***')
            for pattern in cls.PASSWORD_PATTERNS:
                masked = re.sub(pattern, r'\1***', masked, flags=re.IGNORECASE)
            obfuscated.append(masked)
        return obfuscated

    @classmethod
    def obfuscate_environment(cls, env_vars: Dict[str, str]) -> Dict[str, str]:
        """Mask sensitive environment variables"""
        return {
            key: '***' if any(s in key.upper() for s in cls.SENSITIVE_KEYS) else value
            for key, value in env_vars.items()
        }


# =============================================================================
# **PROCESS EXECUTION** - One blocking subprocess per call
# =============================================================================

class CommandExecutionService:
    """Spawns engine and hook processes and collects their results"""

    def __init__(self, config: Optional[ExecutionConfig] = None):
        self.config = config or ExecutionConfig()

    @staticmethod
    def build_environment(*layers: Optional[Dict[str, str]]) -> Dict[str, str]:
        """Process environment with each layer applied on top of the previous one"""
        env = os.environ.copy()
        for layer in layers:
            if layer:
                env.update(layer)
        return env

    def execute(
        self,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        working_directory: Optional[str] = None,
        secrets: Optional[List[str]] = None,
        merge_stderr: bool = False,
    ) -> ExecutionResult:
        """Run a command to completion and capture its output

        With merge_stderr the child's stderr shares the stdout pipe, so stdout
        holds both streams in the order they were written. Undecodable bytes
        are replaced rather than raised.
        """
        logger.debug(f"Executing: {' '.join(CommandObfuscationService.obfuscate_command(command, secrets))}")
        streams = {'stdout': subprocess.PIPE, 'stderr': subprocess.STDOUT} if merge_stderr else {
            'capture_output': self.config.capture_output}
        try:
            result = subprocess.run(
                command,
                timeout=self.config.timeout,
                encoding='utf-8',
                errors='replace',
                env=env,
                cwd=working_directory,
                **streams,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to start {command[0]}: {e}")
            return ExecutionResult(returncode=-1, stderr=str(e), spawn_error=str(e))

        return ExecutionResult(
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

    def execute_streaming(
        self,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        secrets: Optional[List[str]] = None,
    ) -> ExecutionResult:
        """Run a command attached to the terminal, used for passthrough invocations"""
        logger.debug(f"Executing (streaming): {' '.join(CommandObfuscationService.obfuscate_command(command, secrets))}")
        try:
            result = subprocess.run(command, env=env)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to start {command[0]}: {e}")
            return ExecutionResult(returncode=-1, stderr=str(e), spawn_error=str(e))
        return ExecutionResult(returncode=result.returncode)
