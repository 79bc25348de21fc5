"""
Repository models
Targets the engine operates on and the typed records decoded from its JSON output
"""
from datetime import datetime
from typing import List
from pydantic import BaseModel, Field


PRIMARY = "primary"


class RepositoryTarget(BaseModel):
    """One repository to operate on, immutable for the duration of a command"""
    model_config = {'frozen': True}

    name: str
    location: str
    password: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    cache_dir: str = ""

    @property
    def is_primary(self) -> bool:
        return self.name == PRIMARY

    def uses_scheme(self, scheme: str) -> bool:
        return self.location.startswith(scheme)


class Snapshot(BaseModel):
    """Snapshot record from `restic snapshots --json`"""
    id: str
    short_id: str = ""
    time: datetime
    hostname: str = ""
    username: str = ""
    paths: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    tree: str = ""
    parent: str = ""


class RepoStats(BaseModel):
    """Repository statistics from `restic stats --json`"""
    total_size: int = 0
    total_file_count: int = 0
    snapshots_count: int = 0


class LockRecord(BaseModel):
    """A lock held on a repository, as reported by `restic list locks --json`"""
    time: datetime
    hostname: str = ""
    username: str = ""
    pid: int = 0


class LockVerificationResult(BaseModel):
    """Locks on one repository split by whether this host owns them"""
    repository: str = ""
    own_host_locks: List[LockRecord] = Field(default_factory=list)
    other_host_locks: List[LockRecord] = Field(default_factory=list)

    @property
    def has_own_locks(self) -> bool:
        return len(self.own_host_locks) > 0

    @property
    def has_other_locks(self) -> bool:
        return len(self.other_host_locks) > 0


class DeepCheckState(BaseModel):
    """Persisted timestamp of the last successful deep check of one repository"""
    repository: str
    last_check: datetime
