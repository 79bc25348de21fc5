"""
Error taxonomy for resticflow
Every failure raised by the engine adapter, hooks, lock handling and
configuration derives from ResticflowError so the CLI can report it uniformly
"""
from typing import Optional


class ResticflowError(Exception):
    """Base class for all resticflow errors"""


class ConfigurationError(ResticflowError):
    """Configuration is missing, insecure or invalid"""


class EngineExecutionError(ResticflowError):
    """The restic process exited with a nonzero status"""

    def __init__(self, command: str, exit_code: int, description: str, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.description = description
        self.output = output
        super().__init__(f"restic {command} failed (exit code {exit_code}: {description})")


class CrossAccountError(ResticflowError):
    """Copy between two object-storage repositories with different credentials"""

    def __init__(self, source: str, destination: str):
        self.source = source
        self.destination = destination
        super().__init__(
            "cross-account copy is not supported: restic uses a single set of "
            "AWS credentials from the environment, but source and destination "
            "use different access keys. Use rclone to sync the buckets instead "
            f"(rclone sync <src-remote>:{_bucket(source)} <dst-remote>:{_bucket(destination)})"
        )


class HookError(ResticflowError):
    """A lifecycle hook exited with a nonzero status"""

    def __init__(self, path: str, message: str, output: str = ""):
        self.path = path
        self.output = output
        detail = f"hook {path} failed: {message}"
        if output:
            detail += f"\nOutput: {output}"
        super().__init__(detail)


class HookNotExecutableError(HookError):
    """A configured hook exists but lacks the execute bit"""

    def __init__(self, path: str):
        ResticflowError.__init__(self, f"hook {path} exists but is not executable (chmod +x {path})")
        self.path = path
        self.output = ""


class StaleLockError(ResticflowError):
    """This host still holds a lock on a repository after maintenance finished"""

    def __init__(self, repository: str, hostname: str, count: int = 1):
        self.repository = repository
        self.hostname = hostname
        self.count = count
        super().__init__(f"stale lock detected from this host ({hostname}) on {repository} repository")


class ProcessLockError(ResticflowError):
    """Another resticflow instance holds the process lock"""


class UnsupportedProviderError(ResticflowError):
    """Notification provider type has no registered constructor"""

    def __init__(self, provider_type: str, supported: Optional[list] = None):
        self.provider_type = provider_type
        message = f"unsupported notification provider: {provider_type}"
        if supported:
            message += f" (supported: {', '.join(supported)})"
        super().__init__(message)


class WorkflowError(ResticflowError):
    """Aggregate failure of a multi-step workflow"""

    def __init__(self, failed: int, errors: Optional[list] = None):
        self.failed = failed
        self.errors = errors or []
        super().__init__(f"{failed} operation(s) failed")


def _bucket(location: str) -> str:
    """Strip the s3 scheme and endpoint to leave bucket/path for the rclone hint"""
    path = location.split(":", 1)[-1]
    if path.startswith("http://") or path.startswith("https://"):
        path = path.split("://", 1)[1]
        path = path.split("/", 1)[1] if "/" in path else path
    return path
