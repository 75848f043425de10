"""Async Activepieces REST API client using httpx.

Every call is fallible: failures raise EngineError carrying the HTTP status
(None for transport errors), the raw response body, and the request path.
Flow mutations are POST /flows/{id} with a {type, request} operation body.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from autoflow_agent.client.auth import AuthTokenProvider
from autoflow_agent.client.config import Settings
from autoflow_agent.errors import EngineError

logger = logging.getLogger("autoflow_agent.client")

# Flow operation types accepted by POST /flows/{id}
UPDATE_TRIGGER = "UPDATE_TRIGGER"
ADD_ACTION = "ADD_ACTION"
LOCK_AND_PUBLISH = "LOCK_AND_PUBLISH"
CHANGE_STATUS = "CHANGE_STATUS"


class ActivepiecesClient:
    """Thin async wrapper around the Activepieces flow, connection and piece APIs."""

    def __init__(
        self,
        settings: Settings,
        auth: AuthTokenProvider,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._auth = auth
        self._client = httpx.AsyncClient(
            base_url=settings.api_url,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def project_id(self) -> str | None:
        return self._settings.project_id or self._auth.project_id

    def flow_url(self, flow_id: str) -> str:
        return self._settings.flow_url(flow_id)

    async def _resolve_project_id(self) -> str | None:
        """Configured project, else the one returned by sign-in."""
        if not self._settings.project_id:
            await self._auth.get_token()
        return self.project_id

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        token = await self._auth.get_token()
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        headers = {"Authorization": f"Bearer {token}"}
        try:
            r = await self._client.request(
                method,
                path,
                json=payload if method != "GET" else None,
                params=params,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise EngineError(f"Activepieces request failed: {e}", path=path) from e

        if r.status_code >= 400:
            logger.error("%s %s -> %s", method, path, r.status_code)
            raise EngineError(
                f"Activepieces API Error: {r.status_code}",
                status_code=r.status_code,
                response_body=r.text,
                path=path,
            )
        if r.status_code == 204 or not r.text.strip():
            return {"success": True}
        try:
            return r.json()
        except ValueError as e:
            raise EngineError(
                "Activepieces returned a non-JSON body",
                status_code=r.status_code,
                response_body=r.text,
                path=path,
            ) from e

    async def _get(self, path: str, params: dict | None = None) -> Any:
        return await self._request("GET", path, params=params)

    async def _post(self, path: str, payload: dict | None = None) -> Any:
        return await self._request("POST", path, payload or {})

    async def _delete(self, path: str) -> Any:
        return await self._request("DELETE", path)

    async def _apply_operation(self, flow_id: str, op_type: str, request: dict) -> Any:
        logger.debug("flow %s <- %s", flow_id, op_type)
        return await self._post(f"/flows/{flow_id}", {"type": op_type, "request": request})

    # ==================================================================
    # SYSTEM
    # ==================================================================

    async def ping(self) -> bool:
        """True when the engine answers GET /flags (no auth required)."""
        try:
            r = await self._client.get("/flags")
            return r.status_code < 400
        except httpx.HTTPError:
            return False

    # ==================================================================
    # FLOWS
    # ==================================================================

    async def create_flow(self, display_name: str, folder_id: str | None = None) -> Any:
        payload: dict[str, Any] = {
            "displayName": display_name,
            "projectId": await self._resolve_project_id(),
        }
        if folder_id:
            payload["folderId"] = folder_id
        return await self._post("/flows", payload)

    async def update_trigger(self, flow_id: str, request: dict) -> Any:
        return await self._apply_operation(flow_id, UPDATE_TRIGGER, request)

    async def add_action(self, flow_id: str, request: dict) -> Any:
        return await self._apply_operation(flow_id, ADD_ACTION, request)

    async def publish_flow(self, flow_id: str) -> Any:
        return await self._apply_operation(flow_id, LOCK_AND_PUBLISH, {})

    async def set_flow_status(self, flow_id: str, enabled: bool) -> Any:
        return await self._apply_operation(
            flow_id, CHANGE_STATUS, {"status": "ENABLED" if enabled else "DISABLED"},
        )

    async def delete_flow(self, flow_id: str) -> Any:
        return await self._delete(f"/flows/{flow_id}")

    async def get_flow(self, flow_id: str) -> Any:
        return await self._get(f"/flows/{flow_id}")

    async def list_flows(self, limit: int = 50) -> Any:
        project_id = await self._resolve_project_id()
        return await self._get("/flows", params={"limit": limit, "projectId": project_id})

    # ==================================================================
    # CONNECTIONS
    # ==================================================================

    async def list_connections(self) -> Any:
        return await self._get("/connections", params={"projectId": await self._resolve_project_id()})

    # ==================================================================
    # RUNS
    # ==================================================================

    async def list_runs(self, flow_id: str | None = None, limit: int = 10) -> Any:
        params: dict[str, Any] = {"limit": limit}
        if flow_id:
            params["flowId"] = flow_id
        else:
            params["projectId"] = await self._resolve_project_id()
        return await self._get("/flow-runs", params=params)

    # ==================================================================
    # PIECES
    # ==================================================================

    async def list_pieces(self, limit: int = 500) -> Any:
        return await self._get("/pieces", params={"limit": limit})
