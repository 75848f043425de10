"""Piece catalog — the set of known triggers and actions.

Two explicit variants share one read-only interface:

  LiveCatalog      — snapshot built from GET /pieces on the engine
  FallbackCatalog  — built-in minimal snapshot, used when a sync fails

A Catalog is immutable. PiecesRegistry holds the current one and replaces it
with a single attribute assignment on refresh, so readers always see either
the whole old snapshot or the whole new one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

logger = logging.getLogger("autoflow_agent.knowledge.catalog")

COMPACT_LIMIT: int = 50
SIMILAR_LIMIT: int = 5
_DESCRIPTION_CHARS: int = 100


@dataclass(frozen=True)
class OperationDescriptor:
    name: str
    display_name: str
    description: str = ""


@dataclass(frozen=True)
class PieceDescriptor:
    """One catalog entry. triggers/actions are keyed by operation name."""

    name: str
    display_name: str
    description: str = ""
    version: str = ""
    logo_url: str = ""
    categories: tuple[str, ...] = ()
    triggers: Mapping[str, OperationDescriptor] = field(default_factory=dict)
    actions: Mapping[str, OperationDescriptor] = field(default_factory=dict)


@dataclass(frozen=True)
class CatalogCheck:
    """Result of Catalog.check(). reason/suggestions are set when ok is False."""

    ok: bool
    reason: str = ""
    suggestions: tuple[str, ...] = ()
    available: tuple[str, ...] = ()


@dataclass(frozen=True)
class Catalog:
    """Read-only piece lookup. Use LiveCatalog or FallbackCatalog."""

    pieces: Mapping[str, PieceDescriptor] = field(default_factory=dict)
    synced_at: datetime | None = None

    mode: str = field(default="empty", init=False)

    @property
    def is_fallback(self) -> bool:
        return self.mode == "fallback"

    def __len__(self) -> int:
        return len(self.pieces)

    def lookup(self, piece_id: str) -> PieceDescriptor | None:
        return self.pieces.get(piece_id)

    def find_similar(self, piece_id: str) -> list[str]:
        """Names that contain, or are contained in, piece_id (case-insensitive)."""
        lower = piece_id.lower()
        return [
            name for name in self.pieces
            if name.lower() in lower or lower in name.lower()
        ][:SIMILAR_LIMIT]

    def check(self, piece_id: str, operation: str | None = None, kind: str | None = None) -> CatalogCheck:
        """Check that piece_id exists and exposes `operation`.

        kind: "trigger" | "action" restricts which operation set is searched;
              None accepts either.
        """
        piece = self.lookup(piece_id)
        if piece is None:
            return CatalogCheck(
                ok=False,
                reason=f'Piece "{piece_id}" not found in catalog',
                suggestions=tuple(self.find_similar(piece_id)),
            )
        if not operation:
            return CatalogCheck(ok=True)

        names: list[str] = []
        if kind in (None, "trigger"):
            names.extend(piece.triggers)
        if kind in (None, "action"):
            names.extend(piece.actions)
        if operation in names:
            return CatalogCheck(ok=True)
        return CatalogCheck(
            ok=False,
            reason=f'"{operation}" not found in {piece.display_name}',
            available=tuple(names),
        )

    def list_compact(self, limit: int = COMPACT_LIMIT) -> list[dict[str, Any]]:
        """Bounded summary for the producer prompt: names and operations only."""
        out: list[dict[str, Any]] = []
        for piece in list(self.pieces.values())[:limit]:
            out.append({
                "name": piece.name,
                "displayName": piece.display_name,
                "description": piece.description[:_DESCRIPTION_CHARS],
                "triggers": [
                    {"name": t.name, "displayName": t.display_name}
                    for t in piece.triggers.values()
                ],
                "actions": [
                    {"name": a.name, "displayName": a.display_name}
                    for a in piece.actions.values()
                ],
            })
        return out

    def stats(self) -> dict[str, Any]:
        categories = sorted({c for p in self.pieces.values() for c in p.categories})
        return {
            "mode": self.mode,
            "totalPieces": len(self.pieces),
            "totalTriggers": sum(len(p.triggers) for p in self.pieces.values()),
            "totalActions": sum(len(p.actions) for p in self.pieces.values()),
            "lastSync": self.synced_at.isoformat() if self.synced_at else None,
            "categories": categories,
        }


@dataclass(frozen=True)
class LiveCatalog(Catalog):
    mode: str = field(default="live", init=False)


@dataclass(frozen=True)
class FallbackCatalog(Catalog):
    mode: str = field(default="fallback", init=False)


# ---------------------------------------------------------------------------
# Building snapshots
# ---------------------------------------------------------------------------


def _operations(raw: Any) -> dict[str, OperationDescriptor]:
    if not isinstance(raw, dict):
        return {}
    ops: dict[str, OperationDescriptor] = {}
    for key, value in raw.items():
        value = value if isinstance(value, dict) else {}
        ops[key] = OperationDescriptor(
            name=key,
            display_name=value.get("displayName") or key,
            description=value.get("description") or "",
        )
    return ops


def piece_from_api(raw: dict[str, Any]) -> PieceDescriptor:
    """Normalize one GET /pieces entry."""
    return PieceDescriptor(
        name=raw["name"],
        display_name=raw.get("displayName") or raw["name"],
        description=raw.get("description") or "",
        version=str(raw.get("version") or ""),
        logo_url=raw.get("logoUrl") or "",
        categories=tuple(raw.get("categories") or ()),
        triggers=_operations(raw.get("triggers")),
        actions=_operations(raw.get("actions")),
    )


def live_catalog_from_api(body: Any) -> LiveCatalog:
    """Build a LiveCatalog from a GET /pieces body (array or {data: [...]})."""
    items = body if isinstance(body, list) else (body or {}).get("data") or []
    pieces: dict[str, PieceDescriptor] = {}
    for item in items:
        if isinstance(item, dict) and item.get("name"):
            piece = piece_from_api(item)
            pieces[piece.name] = piece
    return LiveCatalog(pieces=pieces, synced_at=datetime.now(timezone.utc))


def _fallback_piece(name: str, display: str, triggers: dict[str, str], actions: dict[str, str]) -> PieceDescriptor:
    return PieceDescriptor(
        name=f"@activepieces/piece-{name}",
        display_name=display,
        version="0.0.1",
        triggers={k: OperationDescriptor(k, v) for k, v in triggers.items()},
        actions={k: OperationDescriptor(k, v) for k, v in actions.items()},
    )


_FALLBACK_PIECES: tuple[PieceDescriptor, ...] = (
    _fallback_piece("gmail", "Gmail", {"new-email": "New Email"},
                    {"send-email": "Send Email", "read-email": "Read Email"}),
    _fallback_piece("slack", "Slack", {"new-message": "New Message"},
                    {"send-channel-message": "Send Message to Channel",
                     "send-direct-message": "Send Direct Message"}),
    _fallback_piece("google-sheets", "Google Sheets", {"new-row-added": "New Row Added"},
                    {"insert-row": "Insert Row", "update-row": "Update Row"}),
    _fallback_piece("schedule", "Schedule",
                    {"cron_expression": "Cron Expression", "every_hour": "Every Hour",
                     "every_day": "Every Day"}, {}),
    _fallback_piece("webhook", "Webhook", {"catch_request": "Catch Webhook"}, {}),
    _fallback_piece("http", "HTTP", {}, {"send-request": "Send HTTP Request"}),
    _fallback_piece("openai", "OpenAI", {},
                    {"ask-chatgpt": "Ask ChatGPT", "generate-image": "Generate Image"}),
    _fallback_piece("notion", "Notion", {"new-database-item": "New Database Item"},
                    {"create-database-item": "Create Database Item",
                     "update-database-item": "Update Database Item"}),
    _fallback_piece("telegram-bot", "Telegram Bot", {"new-message": "New Message"},
                    {"send-text-message": "Send Text Message"}),
    _fallback_piece("discord", "Discord", {"new-message": "New Message"},
                    {"send-message-webhook": "Send Message (Webhook)"}),
    _fallback_piece("airtable", "Airtable", {"new-record": "New Record"},
                    {"create-record": "Create Record"}),
    _fallback_piece("hubspot", "HubSpot", {"new-contact": "New Contact"},
                    {"create-contact": "Create Contact", "update-contact": "Update Contact"}),
    _fallback_piece("whatsapp", "WhatsApp", {}, {"send-message": "Send Message"}),
    _fallback_piece("google-calendar", "Google Calendar", {"new-event": "New Event"},
                    {"create-event": "Create Event"}),
    _fallback_piece("google-drive", "Google Drive", {"new-file": "New File"},
                    {"upload-file": "Upload File"}),
    _fallback_piece("linkedin", "LinkedIn", {}, {"create-share-update": "Create Share Update"}),
    _fallback_piece("twitter", "Twitter/X", {}, {"create-tweet": "Create Tweet"}),
    _fallback_piece("trello", "Trello", {"new-card": "New Card"}, {"create-card": "Create Card"}),
)


def fallback_catalog() -> FallbackCatalog:
    return FallbackCatalog(
        pieces={p.name: p for p in _FALLBACK_PIECES},
        synced_at=datetime.now(timezone.utc),
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class PiecesRegistry:
    """Holds the current Catalog snapshot and refreshes it from the engine.

    refresh() never leaves the registry empty: any failure (auth, HTTP, empty
    result) installs the built-in FallbackCatalog instead.
    """

    def __init__(self, client: Any, catalog: Catalog | None = None) -> None:
        self._client = client
        self._catalog: Catalog = catalog if catalog is not None else Catalog()
        self._task: asyncio.Task | None = None

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    async def refresh(self) -> Catalog:
        try:
            body = await self._client.list_pieces()
            snapshot: Catalog = live_catalog_from_api(body)
        except Exception as e:
            logger.warning("Pieces sync failed: %s; using fallback catalog", e)
            snapshot = fallback_catalog()
        else:
            if not len(snapshot):
                logger.warning("No pieces returned; using fallback catalog")
                snapshot = fallback_catalog()

        self._catalog = snapshot
        logger.info("Catalog loaded: %d pieces (%s)", len(snapshot), snapshot.mode)
        return snapshot

    async def ensure_loaded(self) -> Catalog:
        if not len(self._catalog):
            return await self.refresh()
        return self._catalog

    def start_periodic_refresh(self, interval_seconds: float) -> asyncio.Task:
        """Refresh every interval_seconds in a background task."""

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval_seconds)
                await self.refresh()

        self._task = asyncio.create_task(_loop(), name="catalog-refresh")
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
