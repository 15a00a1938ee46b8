"""
Pydantic models for upgrade engine configuration and Portainer instances.
"""

import re
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_DATABASE_IMAGE_PATTERN = r'postgres|mysql|mariadb|redis|mongodb|couchdb|influxdb|elasticsearch'


class UpgradeSettings(BaseModel):
    """Timing and threshold settings for container upgrades"""

    # Readiness monitor
    readiness_interval: float = Field(2.0, gt=0, le=60)  # seconds between polls
    readiness_max_wait: float = Field(120.0, ge=5, le=3600)
    required_stable_checks: int = Field(3, ge=1, le=100)  # no-health floor checks
    health_grace_seconds: float = Field(30.0, ge=0, le=3600)  # health stuck on "starting"
    health_grace_checks: int = Field(5, ge=1, le=100)
    no_health_min_seconds: float = Field(15.0, ge=0, le=3600)
    quick_ready_seconds: float = Field(5.0, ge=0, le=3600)  # non-database shortcut
    quick_ready_checks: int = Field(2, ge=1, le=100)
    database_image_pattern: str = Field(DEFAULT_DATABASE_IMAGE_PATTERN, max_length=1000)
    log_tail_lines: int = Field(50, ge=1, le=5000)

    # Stop monitor
    stop_interval: float = Field(0.5, gt=0, le=60)
    stop_max_wait: float = Field(10.0, ge=0, le=600)

    # Post-readiness stabilization before dependents are touched
    stabilization_max_wait: float = Field(30.0, ge=0, le=600)
    stabilization_interval: float = Field(2.0, gt=0, le=60)
    verify_running_delay: float = Field(3.0, ge=0, le=60)

    # Dependent handling
    dependent_cleanup_delay: float = Field(3.0, ge=0, le=120)  # after pre-upgrade removal
    dependent_rebuild_delay: float = Field(5.0, ge=0, le=120)  # after post-upgrade removal
    stale_name_removal_delay: float = Field(2.0, ge=0, le=60)
    restart_pause: float = Field(1.0, ge=0, le=60)

    # Remote API
    request_timeout: float = Field(30.0, gt=0, le=600)
    pull_timeout: float = Field(600.0, gt=0, le=7200)
    pull_image_before_create: bool = True
    reverse_proxy_image_markers: List[str] = Field(default_factory=lambda: ['nginx-proxy-manager'])

    # Batch execution
    max_concurrent_upgrades: int = Field(3, ge=1, le=20)
    lock_ttl_seconds: float = Field(600.0, gt=0, le=86400)  # stale upgrade lock expiry

    @field_validator('database_image_pattern')
    @classmethod
    def validate_database_image_pattern(cls, v: str) -> str:
        """Pattern must compile; it is matched case-insensitively against image names"""
        try:
            re.compile(v, re.IGNORECASE)
        except re.error as e:
            raise ValueError(f'Invalid database image pattern: {e}')
        return v

    @field_validator('reverse_proxy_image_markers')
    @classmethod
    def validate_reverse_proxy_markers(cls, v: List[str]) -> List[str]:
        """Strip blanks and lowercase markers"""
        return [marker.strip().lower() for marker in v if marker and marker.strip()]

    @model_validator(mode='after')
    def validate_readiness_thresholds(self) -> 'UpgradeSettings':
        """The quick shortcut must not outlast the no-health floor"""
        if self.quick_ready_seconds > self.no_health_min_seconds:
            raise ValueError('quick_ready_seconds cannot exceed no_health_min_seconds')
        if self.readiness_interval > self.readiness_max_wait:
            raise ValueError('readiness_interval cannot exceed readiness_max_wait')
        return self

    def is_database_image(self, image: str) -> bool:
        """True if the image name looks like a database (gets the longer readiness floor)"""
        return bool(re.search(self.database_image_pattern, image or '', re.IGNORECASE))


class PortainerInstance(BaseModel):
    """A managed Portainer instance and its stored credentials"""

    url: str = Field(..., min_length=1, max_length=2000)
    name: Optional[str] = Field(None, max_length=200)
    auth_type: Literal['apikey', 'password'] = 'apikey'
    api_key: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    ip_address: Optional[str] = Field(None, max_length=100)  # cached by the instance tracker

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Instance URLs must be absolute http(s) URLs"""
        v = v.strip()
        if not v.lower().startswith(('http://', 'https://')):
            raise ValueError('Instance URL must start with http:// or https://')
        return v

    @model_validator(mode='after')
    def validate_credentials(self) -> 'PortainerInstance':
        """Credentials must match the declared auth type"""
        if self.auth_type == 'apikey' and not self.api_key:
            raise ValueError('api_key is required for apikey authentication')
        if self.auth_type == 'password' and not (self.username and self.password):
            raise ValueError('username and password are required for password authentication')
        return self
