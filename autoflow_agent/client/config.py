"""Configuration for the Activepieces HTTP client and the flow compiler."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Settings:
    """Immutable settings loaded from environment variables."""

    base_url: str = "http://localhost:8080"
    email: str = ""
    password: str = field(default="", repr=False)
    project_id: str | None = None
    timeout: float = 30.0
    default_timezone: str = "UTC"
    compile_timeout: float = 120.0
    catalog_refresh_hours: float = 6.0
    max_actions: int = 30
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            base_url=os.getenv("AP_BASE_URL", "http://localhost:8080").rstrip("/"),
            email=os.getenv("AP_EMAIL", ""),
            password=os.getenv("AP_PASSWORD", ""),
            project_id=os.getenv("AP_PROJECT_ID") or None,
            timeout=float(os.getenv("AP_TIMEOUT", "30")),
            default_timezone=os.getenv("AP_DEFAULT_TIMEZONE", "UTC"),
            compile_timeout=float(os.getenv("AP_COMPILE_TIMEOUT", "120")),
            catalog_refresh_hours=float(os.getenv("AP_CATALOG_REFRESH_HOURS", "6")),
            max_actions=int(os.getenv("AP_MAX_ACTIONS", "30")),
            log_level=os.getenv("AUTOFLOW_LOG_LEVEL", "INFO").upper(),
        )

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/api/v1"

    def flow_url(self, flow_id: str) -> str:
        """Browser URL of a flow in the Activepieces builder."""
        return f"{self.base_url}/flows/{flow_id}"
