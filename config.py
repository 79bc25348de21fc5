#!/usr/bin/env python3
"""
Configuration manager for resticflow
Resolves, security-checks and loads the YAML config file, merges secrets,
and builds the repository targets every command operates on
"""
import os
import pwd
import re
import stat
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from models.errors import ConfigurationError
from models.repository import PRIMARY, RepositoryTarget
from models.settings import Settings
from services.deep_check import STATE_FILE_PREFIX
from services.paths import AppPaths, YAMLFileManager

logger = logging.getLogger(__name__)

SECURE_MODES = (0o600, 0o400)
SOURCE_FLAG = "flag --config"
SOURCE_CONTEXT = "context"
SOURCE_DEFAULT = "default path"
CONFIG_SUFFIXES = ('.yaml', '.yml')
SECRET_PLACEHOLDER = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

EXAMPLE_CONFIG = """# resticflow configuration
repository: "s3:s3.amazonaws.com/my-bucket/restic"
password: "${RESTIC_PASSWORD}"

directories:
  - /etc
  - /home

exclude_patterns:
  - "*.tmp"
  - "**/node_modules/**"

retention:
  keep_within: "7d"
  keep_hourly: 24
  keep_daily: 7
  keep_weekly: 4
  keep_monthly: 12
  keep_yearly: 5

deep_check_interval_days: 30

backends: {}
copy_to_backends: []

hooks:
  pre_backup: ""
  post_backup: ""
  on_error: ""
  on_success: ""

notifications:
  enabled: false
  notify_on_success: false
  notify_on_error: true
  providers: []

logging:
  file: ""
  level: info
"""


# =============================================================================
# **CONTEXT FILE** - Remembers the selected config file and active backend
# =============================================================================

@dataclass
class Context:
    config_file: str = ""
    active_backend: str = ""


class ContextStore:
    """Persists the user's selected config file and active backend"""

    def __init__(self, paths: Optional[AppPaths] = None):
        self.paths = paths or AppPaths()
        self.path = self.paths.context_file

    def load(self) -> Context:
        data = YAMLFileManager.load_yaml_file(self.path)
        return Context(
            config_file=str(data.get('config_file') or ""),
            active_backend=str(data.get('active_backend') or ""),
        )

    def save(self, context: Context) -> None:
        data = {}
        if context.config_file:
            data['config_file'] = context.config_file
        if context.active_backend:
            data['active_backend'] = context.active_backend
        YAMLFileManager.save_yaml_file(self.path, data)

    def set_active_backend(self, name: str) -> None:
        context = self.load()
        context.active_backend = "" if name == PRIMARY else name
        self.save(context)

    def set_config_file(self, config_file: str) -> None:
        context = self.load()
        context.config_file = str(Path(config_file).expanduser().resolve())
        self.save(context)

    def reset(self) -> None:
        if self.path.exists():
            self.path.unlink()


def list_config_files(paths: AppPaths) -> List[Path]:
    """YAML files in the user and system config directories, skipping resticflow's own state files"""
    found = []
    for directory in (paths.user_config_dir, paths.system_config_dir):
        try:
            entries = sorted(directory.iterdir())
        except OSError:
            continue
        for entry in entries:
            if entry.suffix not in CONFIG_SUFFIXES or not entry.is_file():
                continue
            if entry == paths.context_file or entry.name.startswith(STATE_FILE_PREFIX):
                continue
            found.append(entry)
    return found


# =============================================================================
# **FILE SECURITY** - Config files hold repository passwords
# =============================================================================

def validate_file_permissions(path: Path) -> None:
    """Config must be 0600/0400 and owned by root, the current user or SUDO_USER"""
    info = path.stat()
    mode = stat.S_IMODE(info.st_mode)
    if mode not in SECURE_MODES:
        raise ConfigurationError(
            f"configuration file has insecure permissions: {path} has {mode:04o}, "
            f"expected 0600 or 0400 (chmod 600 {path})"
        )

    allowed = {0, os.getuid()}
    sudo_user = os.environ.get('SUDO_USER')
    if sudo_user:
        try:
            allowed.add(pwd.getpwnam(sudo_user).pw_uid)
        except KeyError:
            pass
    if info.st_uid not in allowed:
        raise ConfigurationError(
            f"configuration file not owned by root or current user: {path} (owner uid {info.st_uid})"
        )


def expand_path(path: str) -> str:
    return os.path.expanduser(path) if path else path


# =============================================================================
# **LOADER**
# =============================================================================

class ConfigLoader:
    """Finds and loads the configuration file"""

    def __init__(self, paths: Optional[AppPaths] = None, environ: Optional[Dict[str, str]] = None):
        self.paths = paths or AppPaths()
        self.environ = environ if environ is not None else os.environ
        self.context_store = ContextStore(self.paths)
        self.loaded_path: Optional[Path] = None
        self.loaded_source = ""
        self.alternate_paths: List[Path] = []

    def resolve_path(self, explicit: str = "") -> Path:
        """Explicit path, then the context file, then the default locations"""
        self.alternate_paths = []
        self.loaded_source = SOURCE_FLAG if explicit else SOURCE_DEFAULT
        if explicit:
            path = Path(explicit).expanduser()
            if not path.exists():
                raise ConfigurationError(f"config file not found: {explicit}")
            return path

        context = self.context_store.load()
        if context.config_file and Path(context.config_file).exists():
            self.loaded_source = SOURCE_CONTEXT
            return Path(context.config_file)

        candidates = self.paths.config_candidates()
        sudo_user = self.environ.get('SUDO_USER')
        if self.paths.root and sudo_user:
            candidates.append(Path("/home") / sudo_user / ".config" / "resticflow" / "config.yaml")

        existing = [c for c in candidates if c.exists()]
        if not existing:
            raise ConfigurationError(
                "no configuration file found. Create one at ~/.config/resticflow/config.yaml "
                "or /etc/resticflow/config.yaml"
            )
        self.alternate_paths = existing[1:]
        return existing[0]

    def load(self, explicit: str = "", check_permissions: bool = True, require_directories: bool = True) -> Settings:
        path = self.resolve_path(explicit)
        if check_permissions:
            validate_file_permissions(path)

        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"failed to parse config file {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"config file {path} must contain a mapping")

        secrets = self._load_secrets(path)
        raw = self._merge_secrets(raw, secrets)

        try:
            settings = Settings.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationError(f"invalid configuration in {path}: {e}") from e

        settings = self._apply_environment(settings)
        self.validate(settings, require_directories)
        self.loaded_path = path
        logger.debug(f"Loaded configuration from {path}")
        return settings

    def _load_secrets(self, config_path: Path) -> Dict[str, str]:
        """Secrets from a .env file next to the config, then the process environment"""
        secrets = {}
        env_file = config_path.with_suffix('.env')
        if not env_file.exists():
            env_file = config_path.parent / '.env'
        if env_file.exists():
            secrets.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        for key, value in self.environ.items():
            secrets.setdefault(key, value)
        return secrets

    def _merge_secrets(self, config: Any, secrets: Dict[str, str]) -> Any:
        """Replace ${VAR} placeholders anywhere in the loaded YAML"""
        if isinstance(config, dict):
            return {key: self._merge_secrets(value, secrets) for key, value in config.items()}
        if isinstance(config, list):
            return [self._merge_secrets(item, secrets) for item in config]
        if isinstance(config, str):
            return SECRET_PLACEHOLDER.sub(lambda m: secrets.get(m.group(1), ""), config)
        return config

    def _apply_environment(self, settings: Settings) -> Settings:
        """RESTIC_PASSWORD and AWS_* environment variables win for the primary repository"""
        overrides = {}
        for field_name, env_name in (
            ('password', 'RESTIC_PASSWORD'),
            ('aws_access_key_id', 'AWS_ACCESS_KEY_ID'),
            ('aws_secret_access_key', 'AWS_SECRET_ACCESS_KEY'),
        ):
            value = self.environ.get(env_name)
            if value:
                overrides[field_name] = value
        if not overrides:
            return settings
        return settings.model_copy(update=overrides)

    @staticmethod
    def validate(settings: Settings, require_directories: bool = True) -> None:
        if not settings.repository:
            raise ConfigurationError("repository is required")
        if not settings.password:
            raise ConfigurationError("password is required (set in config or RESTIC_PASSWORD env)")
        if require_directories and not settings.directories:
            raise ConfigurationError("at least one directory to backup is required")
        if PRIMARY in settings.backends:
            raise ConfigurationError(f"backend name '{PRIMARY}' is reserved for the main repository")
        for name in settings.copy_to_backends:
            backend = settings.backends.get(name)
            if backend is None:
                raise ConfigurationError(f"copy backend '{name}' is not defined in backends")
            if not backend.repository:
                raise ConfigurationError(f"backend '{name}' has no repository")

    def write_example(self, path: Path) -> None:
        if path.exists():
            raise ConfigurationError(f"config file already exists: {path}")
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        path.write_text(EXAMPLE_CONFIG)
        os.chmod(path, 0o600)


# =============================================================================
# **TARGETS** - Settings to repository targets
# =============================================================================

def build_targets(settings: Settings) -> Tuple[RepositoryTarget, Dict[str, RepositoryTarget]]:
    """Primary target plus one target per configured backend"""
    cache_dir = expand_path(settings.cache_dir)
    primary = RepositoryTarget(
        name=PRIMARY,
        location=settings.repository,
        password=settings.password,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        cache_dir=cache_dir,
    )
    backends = {
        name: RepositoryTarget(
            name=name,
            location=backend.repository,
            password=backend.password,
            aws_access_key_id=backend.aws_access_key_id,
            aws_secret_access_key=backend.aws_secret_access_key,
            cache_dir=cache_dir,
        )
        for name, backend in settings.backends.items()
    }
    return primary, backends


def copy_targets(settings: Settings, backends: Dict[str, RepositoryTarget]) -> List[RepositoryTarget]:
    """Copy backends in configured order"""
    return [backends[name] for name in settings.copy_to_backends if name in backends]


def resolve_active_backend(name: str, backends: Dict[str, RepositoryTarget]) -> Optional[RepositoryTarget]:
    if not name or name == PRIMARY:
        return None
    target = backends.get(name)
    if target is None:
        raise ConfigurationError(f"backend '{name}' not found in configuration")
    return target
