"""Upstream ingestion: feeds, source adapters, normalization and status classification."""

from .adapters import (
    AngelOneAdapter,
    BaseSourceAdapter,
    DeltaExchangeAdapter,
    DhanAdapter,
    FieldMap,
    FyersAdapter,
    GrowwAdapter,
    KotakNeoAdapter,
    SourceCredential,
    SourceKind,
    UpstoxAdapter,
    ZerodhaAdapter,
    build_source_adapter,
)
from .feeds import HTTPOrderFeed, OrderFeed, StaticOrderFeed
from .normalizer import NormalizedBatch, OrderNormalizer
from .status import CANCELLED_ALIASES, COMPLETE_ALIASES, classify, validate_status_table

__all__ = [
    "AngelOneAdapter",
    "BaseSourceAdapter",
    "CANCELLED_ALIASES",
    "COMPLETE_ALIASES",
    "DeltaExchangeAdapter",
    "DhanAdapter",
    "FieldMap",
    "FyersAdapter",
    "GrowwAdapter",
    "HTTPOrderFeed",
    "KotakNeoAdapter",
    "NormalizedBatch",
    "OrderFeed",
    "OrderNormalizer",
    "SourceCredential",
    "SourceKind",
    "StaticOrderFeed",
    "UpstoxAdapter",
    "ZerodhaAdapter",
    "build_source_adapter",
    "classify",
    "validate_status_table",
]
