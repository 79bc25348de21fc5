"""
Environment export
Shell snippets that point a plain restic invocation at a configured repository
"""
from typing import List, Tuple

from models.errors import ConfigurationError, ResticflowError
from models.repository import RepositoryTarget

SHELLS = ('bash', 'fish', 'powershell')
FOOTER = (
    "# Environment variables exported successfully\n"
    "# You can now use restic commands directly\n"
)


def _escape_shell(value: str) -> str:
    return value.replace("'", "'\\''")


def _escape_powershell(value: str) -> str:
    return value.replace("'", "''")


def environment_pairs(target: RepositoryTarget) -> List[Tuple[str, str]]:
    if not target.location:
        raise ConfigurationError(f"repository not configured for backend '{target.name}'")
    if not target.password:
        raise ConfigurationError(f"password not configured for backend '{target.name}'")
    pairs = [('RESTIC_REPOSITORY', target.location), ('RESTIC_PASSWORD', target.password)]
    if target.aws_access_key_id:
        pairs.append(('AWS_ACCESS_KEY_ID', target.aws_access_key_id))
    if target.aws_secret_access_key:
        pairs.append(('AWS_SECRET_ACCESS_KEY', target.aws_secret_access_key))
    return pairs


def export_environment(target: RepositoryTarget, shell: str = 'bash') -> str:
    """Render export statements for bash/sh, fish or PowerShell"""
    shell = shell.lower()
    if shell in ('bash', 'sh', 'zsh'):
        template, escape = "export {key}='{value}'\n", _escape_shell
    elif shell == 'fish':
        template, escape = "set -x {key} '{value}'\n", _escape_shell
    elif shell in ('powershell', 'pwsh'):
        template, escape = "$env:{key} = '{value}'\n", _escape_powershell
    else:
        raise ResticflowError(f"unsupported format: {shell} (supported: {', '.join(SHELLS)})")

    lines = [template.format(key=key, value=escape(value)) for key, value in environment_pairs(target)]
    return "".join(lines) + FOOTER
