"""
Deep check tracker
Remembers when each repository last passed a full-data check so that the
read-data check only runs once per configured interval
"""
import hashlib
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from models.repository import DeepCheckState
from services.paths import AppPaths, YAMLFileManager

logger = logging.getLogger(__name__)

STATE_FILE_PREFIX = "deep_check_"

# Raised when a state file exists but cannot be read back
STATE_ERRORS = (OSError, yaml.YAMLError, ValidationError)


def state_file_name(repository: str) -> str:
    """deep_check_<first 4 bytes of sha256(location) as hex>.yaml"""
    digest = hashlib.sha256(repository.encode()).digest()
    return f"{STATE_FILE_PREFIX}{digest[:4].hex()}.yaml"


class DeepCheckTracker:
    """Per-repository deep check timestamp"""

    def __init__(self, repository: str, state_dir: Optional[Path] = None, clock=datetime.now):
        self.repository = repository
        self.state_dir = state_dir or AppPaths().state_dir
        self.path = self.state_dir / state_file_name(repository)
        self.clock = clock

    def last_check(self) -> Optional[datetime]:
        """Timestamp of the last successful deep check, None when unknown

        A file recorded for a different repository (hash collision) counts as
        no state
        """
        data = YAMLFileManager.load_yaml_file(self.path)
        if not data:
            return None
        state = DeepCheckState.model_validate(data)
        if state.repository != self.repository:
            return None
        return state.last_check

    def record_check(self) -> None:
        state = DeepCheckState(repository=self.repository, last_check=self.clock())
        YAMLFileManager.save_yaml_file(self.path, state.model_dump(exclude_none=True, mode='json'))
        logger.info(f"Recorded deep check for {self.repository}")

    def should_run_deep_check(self, interval_days: int) -> bool:
        if interval_days <= 0:
            return False
        try:
            last = self.last_check()
        except STATE_ERRORS as e:
            logger.warning(f"Could not read deep check state {self.path}: {e}")
            return True
        if last is None:
            return True
        return self._now_like(last) - last >= timedelta(days=interval_days)

    def days_until_next(self, interval_days: int) -> Optional[int]:
        """Whole days until the next deep check is due, None when due now or disabled"""
        if interval_days <= 0:
            return None
        try:
            last = self.last_check()
        except STATE_ERRORS:
            return None
        if last is None:
            return None
        remaining = last + timedelta(days=interval_days) - self._now_like(last)
        if remaining <= timedelta(0):
            return None
        return remaining.days + (1 if remaining.seconds else 0)

    def _now_like(self, reference: datetime) -> datetime:
        """Current time with the same timezone awareness as reference"""
        now = self.clock()
        if reference.tzinfo is not None and now.tzinfo is None:
            return now.astimezone()
        if reference.tzinfo is None and now.tzinfo is not None:
            return now.replace(tzinfo=None)
        return now
