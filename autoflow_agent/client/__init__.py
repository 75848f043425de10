"""Activepieces HTTP client, sign-in and settings."""

from autoflow_agent.client.activepieces_client import ActivepiecesClient
from autoflow_agent.client.auth import AuthTokenProvider
from autoflow_agent.client.config import Settings

__all__ = ["ActivepiecesClient", "AuthTokenProvider", "Settings"]
