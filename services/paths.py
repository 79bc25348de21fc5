"""
Filesystem locations used by resticflow
Root installs keep state under /var and /etc, users under their home directory
"""
import os
import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

APP_NAME = "resticflow"


def is_root() -> bool:
    return os.geteuid() == 0


@dataclass
class AppPaths:
    """Centralized path management using pathlib"""
    root: bool = field(default_factory=lambda: is_root())
    home: Path = field(default_factory=Path.home)

    def __post_init__(self):
        self.user_config_dir = self.home / ".config" / APP_NAME
        self.system_config_dir = Path("/etc") / APP_NAME
        self.context_file = self.user_config_dir / "context.yaml"

    @property
    def state_dir(self) -> Path:
        """Directory holding deep-check timestamps"""
        if self.root:
            return Path("/var/lib") / APP_NAME
        return self.user_config_dir

    @property
    def lock_file(self) -> Path:
        if self.root:
            return Path("/var/lock") / f"{APP_NAME}.lock"
        return self.home / ".local" / "share" / APP_NAME / f"{APP_NAME}.lock"

    @property
    def default_log_file(self) -> Path:
        if self.root:
            return Path("/var/log") / APP_NAME / f"{APP_NAME}.log"
        return self.home / ".local" / "share" / APP_NAME / f"{APP_NAME}.log"

    def config_candidates(self) -> list:
        """Default config locations in lookup order"""
        user = self.user_config_dir / "config.yaml"
        system = self.system_config_dir / "config.yaml"
        return [system, user] if self.root else [user, system]


class YAMLFileManager:
    """YAML state file operations shared by the context and deep-check files"""

    @staticmethod
    def load_yaml_file(file_path: Path, default_value: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Load a YAML mapping; missing or empty files give the default"""
        if default_value is None:
            default_value = {}
        if not file_path.exists():
            return default_value

        content = file_path.read_text().strip()
        if not content:
            return default_value
        data = yaml.safe_load(content)
        return data if isinstance(data, dict) else default_value

    @staticmethod
    def save_yaml_file(file_path: Path, data: Dict[str, Any], dir_mode: int = 0o700, file_mode: int = 0o600) -> None:
        """Write a YAML mapping with restrictive permissions"""
        file_path.parent.mkdir(mode=dir_mode, parents=True, exist_ok=True)
        file_path.write_text(yaml.safe_dump(data, default_flow_style=False, indent=2))
        os.chmod(file_path, file_mode)
