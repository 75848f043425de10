"""Shared fixtures: a recording, fault-injectable stand-in for ActivepiecesClient."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from autoflow_agent.errors import EngineError


class RecordingClient:
    """Records every flow call in order; can fail or hang on the n-th call of a method.

    fail_on: {"add_action": 2} raises EngineError on the 2nd add_action call.
    raise_on: {"add_action": (1, RuntimeError("boom"))} raises a custom exception.
    hang_on: {"add_action": 1} blocks that call until cancelled.
    """

    def __init__(
        self,
        shell: Any = None,
        fail_on: dict[str, int] | None = None,
        raise_on: dict[str, tuple[int, BaseException]] | None = None,
        hang_on: dict[str, int] | None = None,
        fail_delete: bool = False,
    ) -> None:
        self.calls: list[tuple[str, Any]] = []
        self._shell = {"id": "flow-1"} if shell is None else shell
        self._fail_on = fail_on or {}
        self._raise_on = raise_on or {}
        self._hang_on = hang_on or {}
        self._fail_delete = fail_delete
        self._counts: dict[str, int] = {}

    async def _hit(self, method: str, payload: Any) -> None:
        self._counts[method] = self._counts.get(method, 0) + 1
        n = self._counts[method]
        self.calls.append((method, payload))
        if self._hang_on.get(method) == n:
            await asyncio.sleep(3600)
        if self._fail_on.get(method) == n:
            raise EngineError(
                f"{method} rejected", status_code=400, response_body='{"code":"INVALID"}',
                path=f"/{method}",
            )
        if method in self._raise_on and self._raise_on[method][0] == n:
            raise self._raise_on[method][1]

    # -- ActivepiecesClient surface used by the compiler ---------------------

    async def create_flow(self, display_name: str, folder_id: str | None = None) -> Any:
        await self._hit("create_flow", display_name)
        return self._shell

    async def update_trigger(self, flow_id: str, request: dict) -> Any:
        await self._hit("update_trigger", request)
        return {"id": flow_id}

    async def add_action(self, flow_id: str, request: dict) -> Any:
        await self._hit("add_action", request)
        return {"id": flow_id}

    async def publish_flow(self, flow_id: str) -> Any:
        await self._hit("publish_flow", flow_id)
        return {"id": flow_id}

    async def delete_flow(self, flow_id: str) -> Any:
        self.calls.append(("delete_flow", flow_id))
        if self._fail_delete:
            raise EngineError("delete failed", status_code=500, path=f"/flows/{flow_id}")
        return {"success": True}

    def flow_url(self, flow_id: str) -> str:
        return f"http://ap.test/flows/{flow_id}"

    # -- helpers -------------------------------------------------------------

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def added(self) -> list[dict]:
        return [payload for name, payload in self.calls if name == "add_action"]


@pytest.fixture
def recording_client():
    """Factory fixture: recording_client(fail_on={...}) -> RecordingClient."""
    return RecordingClient
