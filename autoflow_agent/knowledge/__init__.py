"""Piece catalog: live snapshot from the engine, or a built-in fallback."""

from autoflow_agent.knowledge.catalog import (
    Catalog,
    CatalogCheck,
    FallbackCatalog,
    LiveCatalog,
    PieceDescriptor,
    PiecesRegistry,
    fallback_catalog,
)

__all__ = [
    "Catalog",
    "CatalogCheck",
    "FallbackCatalog",
    "LiveCatalog",
    "PieceDescriptor",
    "PiecesRegistry",
    "fallback_catalog",
]
