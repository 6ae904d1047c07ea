"""
Domain models for stockwatch.

`Record` is the unit of synchronization and carries the wire names expected by
the downstream endpoint as field aliases. `ChangeEvent` and `SyncCursor`
mirror the rows of the change-tracking tables. `MetricSample` and `Alert` are
plain in-memory values owned by the metrics store and the alert manager.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, Optional

from pydantic import BaseModel, Field, PlainSerializer, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Decimals go over the wire as JSON numbers, not strings.
WireDecimal = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class ChangeOperation(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Record(BaseModel):
    """
    One catalog item with its prices and computed available stock.
    """

    code: int = Field(..., alias="Code", description="Business key (Master1.Code).")
    item_name: str = Field("", alias="ItemName")
    print_name: str = Field("", alias="PrintName")
    sale_price: WireDecimal = Field(Decimal("0"), alias="SalePrice")
    cost_price: WireDecimal = Field(Decimal("0"), alias="CostPrice")
    total_available_stock: WireDecimal = Field(Decimal("0"), alias="TotalAvailableStock")
    last_modified: datetime = Field(default_factory=utcnow, alias="LastModified")

    model_config = {
        "frozen": True,
        "populate_by_name": True,
        "arbitrary_types_allowed": False,
    }

    @field_validator("item_name", "print_name", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("total_available_stock", mode="after")
    @classmethod
    def _clamp_stock(cls, value: Decimal) -> Decimal:
        return value if value >= 0 else Decimal("0")

    def to_wire(self) -> Dict[str, Any]:
        """Render as the JSON object posted downstream."""
        return self.model_dump(mode="json", by_alias=True)


class ChangeEvent(BaseModel):
    """
    A logged assertion that a catalog record was inserted, updated or deleted.
    """

    id: int
    code: int
    operation: ChangeOperation
    timestamp: datetime
    processed: bool = False

    model_config = {"frozen": True}


class SyncCursor(BaseModel):
    """
    Bookkeeping of the last successful synchronization.

    `last_sync_time` is None until the first cycle completes.
    """

    last_sync_time: Optional[datetime] = None
    last_sync_count: int = 0

    model_config = {"frozen": True}

    @property
    def never_synced(self) -> bool:
        return self.last_sync_time is None


@dataclass(frozen=True)
class MetricSample:
    name: str
    value: float
    timestamp: datetime


@dataclass(frozen=True)
class Alert:
    type: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=utcnow)


__all__ = [
    "Alert",
    "ChangeEvent",
    "ChangeOperation",
    "MetricSample",
    "Record",
    "SyncCursor",
    "WireDecimal",
    "utcnow",
]
