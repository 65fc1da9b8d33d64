"""
Runtime settings for PolicyGate.

Settings are a frozen Pydantic model loaded from YAML, the same way
policies are. None of these values are part of any wire protocol; they
only size in-memory structures and pick where optional output goes.

Example settings.yaml:
    audit_capacity: 10000
    notification_queue_size: 1024
    audit_db_path: ./policygate-audit.db
    log_level: INFO
    log_json: true
"""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field

# Environment variable naming the default settings file
CONFIG_ENV_VAR = "POLICYGATE_CONFIG"


class Settings(BaseModel):
    """
    Engine configuration.

    Attributes:
        audit_capacity: Entries kept in memory before FIFO eviction
        notification_queue_size: Pending subscriber notifications before drops
        audit_db_path: Optional SQLite file mirroring every audit entry
        log_level: Logging level name
        log_json: Render logs as JSON lines instead of console output
        max_condition_depth: Deepest nesting a condition may use
        max_condition_length: Longest condition string accepted
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    audit_capacity: int = Field(default=10_000, gt=0)
    notification_queue_size: int = Field(default=1024, gt=0)
    audit_db_path: Path | None = Field(default=None)
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)
    max_condition_depth: int = Field(default=32, gt=0, le=128)
    max_condition_length: int = Field(default=4096, gt=0, le=65_536)


def load_settings(path: Path | str | None = None) -> Settings:
    """
    Load settings from a YAML file.

    When no path is given, the file named by $POLICYGATE_CONFIG is used;
    if that is unset too, defaults are returned.

    Raises:
        FileNotFoundError: If the named file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if not env_path:
            return Settings()
        path = env_path

    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f) or {}

    return Settings.model_validate(data)
