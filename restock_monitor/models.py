"""Data structures shared by the fetcher, extractor, store and worker."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class StockStatus(str, Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN = "unknown"


class NotificationType(str, Enum):
    PRICE = "PRICE"
    STOCK = "STOCK"
    RESTOCK = "RESTOCK"


class CheckStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class FetchResult:
    html: str
    final_url: str
    strategy_used: str  # "http" | "browser"
    status_code: Optional[int] = None


@dataclass
class ExtractedVariant:
    attributes: Dict[str, str]
    price: Optional[float] = None
    stock_status: StockStatus = StockStatus.UNKNOWN
    currency: Optional[str] = None
    sku: Optional[str] = None


@dataclass
class ExtractedProduct:
    """Canonical result of one extraction, before it touches the store."""

    url: str
    name: str
    main_image_url: Optional[str] = None
    description: Optional[str] = None
    vendor: Optional[str] = None
    currency: Optional[str] = None
    images: List[str] = field(default_factory=list)
    variants: List[ExtractedVariant] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    strategy: str = ""


@dataclass
class Product:
    id: int
    url: str
    name: str
    main_image_url: Optional[str]
    description: Optional[str]
    vendor: Optional[str]
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Variant:
    id: int
    product_id: int
    attributes: Dict[str, str]
    current_price: Optional[float]
    current_stock_status: StockStatus
    currency: Optional[str]
    sku: Optional[str]
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["current_stock_status"] = self.current_stock_status.value
        return d


@dataclass(frozen=True)
class VariantSnapshot:
    """The comparable state of a variant at one point in time."""

    current_price: Optional[float]
    current_stock_status: StockStatus

    @classmethod
    def of(cls, variant: Variant) -> "VariantSnapshot":
        return cls(variant.current_price, variant.current_stock_status)


@dataclass
class IngestResult:
    product: Product
    variants: List[Variant]
    notes: List[str] = field(default_factory=list)
    # Persisted state of each touched variant before this ingestion; None
    # for variants created by it.
    previous: Dict[int, Optional[VariantSnapshot]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product.to_dict(),
            "variants": [v.to_dict() for v in self.variants],
            "notes": list(self.notes),
        }


@dataclass
class Notification:
    type: NotificationType
    product_id: int
    variant_id: int
    message: str
    old_price: Optional[float] = None
    new_price: Optional[float] = None
    old_status: Optional[StockStatus] = None
    new_status: Optional[StockStatus] = None
    created_at: Optional[str] = None
    read: bool = False
    sent: bool = False
    discord_sent: bool = False
    email_sent: bool = False
    id: Optional[int] = None


@dataclass
class TrackedItem:
    id: int
    product_id: int
    url: str
    user_id: Optional[str] = None
    variant_id: Optional[int] = None
    notifications_enabled: bool = True
    last_checked_at: Optional[str] = None


@dataclass
class DueCheck:
    """One product URL to re-check, with every tracked item that wants it."""

    product_id: int
    url: str
    tracked_item_ids: List[int] = field(default_factory=list)


@dataclass
class CheckRun:
    product_id: Optional[int]
    url: str
    started_at: str
    finished_at: str
    status: CheckStatus
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    strategy_used: Optional[str] = None
    variants_found: int = 0
    notifications_created: int = 0
    duration_ms: int = 0
    id: Optional[int] = None


__all__ = [
    "StockStatus",
    "NotificationType",
    "CheckStatus",
    "FetchResult",
    "ExtractedVariant",
    "ExtractedProduct",
    "Product",
    "Variant",
    "VariantSnapshot",
    "IngestResult",
    "Notification",
    "TrackedItem",
    "DueCheck",
    "CheckRun",
]
