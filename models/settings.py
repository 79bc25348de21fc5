"""
Settings models for resticflow
Validated in-memory representation of the YAML configuration file
"""
from typing import Dict, List, Any
from pydantic import BaseModel, Field


# Retention defaults
KEEP_WITHIN = "7d"
KEEP_HOURLY = 24
KEEP_DAILY = 7
KEEP_WEEKLY = 4
KEEP_MONTHLY = 12
KEEP_YEARLY = 5
DEEP_CHECK_INTERVAL_DAYS = 30


class RetentionPolicy(BaseModel):
    """Retention policy applied identically to the primary and every copy backend"""
    model_config = {'frozen': True}

    keep_within: str = KEEP_WITHIN
    keep_hourly: int = Field(default=KEEP_HOURLY, ge=0)
    keep_daily: int = Field(default=KEEP_DAILY, ge=0)
    keep_weekly: int = Field(default=KEEP_WEEKLY, ge=0)
    keep_monthly: int = Field(default=KEEP_MONTHLY, ge=0)
    keep_yearly: int = Field(default=KEEP_YEARLY, ge=0)


class BackendSettings(BaseModel):
    """A named secondary repository"""
    repository: str = ""
    password: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""


class HookSettings(BaseModel):
    pre_backup: str = ""
    post_backup: str = ""
    on_error: str = ""
    on_success: str = ""


class NotificationProviderSettings(BaseModel):
    """One notification destination"""
    type: str
    url: str = ""
    token: str = ""
    channel: str = ""
    options: Dict[str, Any] = Field(default_factory=dict)


class NotificationSettings(BaseModel):
    enabled: bool = False
    notify_on_success: bool = False
    notify_on_error: bool = True
    providers: List[NotificationProviderSettings] = Field(default_factory=list)


class LoggingSettings(BaseModel):
    file: str = ""
    max_size_mb: int = 10
    max_files: int = 5
    level: str = "info"
    console: bool = False
    json_format: bool = Field(default=False, alias='json')

    model_config = {'populate_by_name': True}


class Settings(BaseModel):
    """Complete resticflow configuration"""
    repository: str = ""
    password: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    cache_dir: str = ""
    restic_binary: str = "restic"

    directories: List[str] = Field(default_factory=list)
    exclude_patterns: List[str] = Field(default_factory=list)
    exclude_file: str = ""
    default_tags: List[str] = Field(default_factory=list)

    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    deep_check_interval_days: int = DEEP_CHECK_INTERVAL_DAYS
    check_read_data_subset: str = ""

    backends: Dict[str, BackendSettings] = Field(default_factory=dict)
    copy_to_backends: List[str] = Field(default_factory=list)
    cross_account_schemes: List[str] = Field(default_factory=lambda: ["s3:"])

    hooks: HookSettings = Field(default_factory=HookSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    verify_no_locks: bool = False
