"""
Configuration for the Governance Engine.

Settings are read from a YAML file when one is given; every field has a
default so the engine also runs unconfigured in mock mode.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


class ConnectorSettings(BaseModel):
    """Endpoints for the HTTP connectors (ignored in mock mode)."""
    entitlement_source_url: Optional[str] = None
    access_link_url: Optional[str] = None
    notification_url: Optional[str] = None
    api_token: Optional[str] = None
    timeout_seconds: float = 10.0


class GovernanceConfig(BaseModel):
    """Engine-wide settings."""
    mock_mode: bool = True
    policy_dir: Optional[str] = Field(None, description="Directory with role_templates.yaml and sod_rules.yaml")
    state_file: Optional[str] = Field(None, description="JSON file for the governance store")
    audit_dir: str = "audit"
    event_log_dir: Optional[str] = None
    event_history_size: int = Field(1000, ge=1, description="Events kept in memory by the event bus")
    snapshot_file: Optional[str] = Field(None, description="JSON users/grants snapshot loaded in mock mode")

    overprivileged_threshold: int = Field(3, ge=1)
    stale_access_days: int = Field(90, ge=1)
    downgrade_access_type: str = Field("member", description="Access level stale admin grants are downgraded to")
    remediation_deadline_days: int = Field(30, ge=1)
    campaign_duration_days: int = Field(30, ge=1)
    quarterly_auto_approve: bool = False
    reminder_days: List[int] = Field(default_factory=lambda: [7, 3, 1])
    escalation_days: List[int] = Field(default_factory=lambda: [3, 7, 14])
    auto_approve_after_days: int = Field(7, ge=0)
    overprivileged_scan_weekday: str = "monday"
    check_interval_seconds: int = Field(3600, ge=1)

    connectors: ConnectorSettings = Field(default_factory=ConnectorSettings)

    @field_validator("overprivileged_scan_weekday")
    @classmethod
    def validate_weekday(cls, v: str) -> str:
        if v.lower() not in WEEKDAYS:
            raise ValueError(f"Unknown weekday: {v}")
        return v.lower()

    @property
    def overprivileged_weekday_index(self) -> int:
        """Python weekday number (Monday=0) of the weekly scan."""
        return WEEKDAYS.index(self.overprivileged_scan_weekday)


def load_config(path: Optional[Union[str, Path]] = None,
                overrides: Optional[Dict[str, Any]] = None) -> GovernanceConfig:
    """
    Load engine configuration.

    Args:
        path: Optional YAML file. Missing files fall back to defaults.
        overrides: Values applied on top of the file contents

    Returns:
        Validated GovernanceConfig
    """
    data: Dict[str, Any] = {}

    if path:
        config_path = Path(path)
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {config_path}")
        else:
            logger.warning(f"Configuration file not found: {config_path}")

    if overrides:
        data.update(overrides)

    return GovernanceConfig(**data)
