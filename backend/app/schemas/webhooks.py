"""Pydantic schemas for Stripe webhook events"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, Optional


class StripeWebhookEvent(BaseModel):
    """A provider notification as handed to the dispatcher (never persisted as-is)"""
    id: str = ""
    type: str
    account: Optional[str] = None  # connected account, None for platform events
    livemode: bool = False
    created: Optional[int] = None
    data_object: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StripeWebhookEvent":
        data = payload.get("data") or {}
        data_object = data.get("object") if isinstance(data, dict) else None
        return cls(
            id=payload.get("id") or "",
            type=payload.get("type") or "",
            account=payload.get("account") or None,
            livemode=bool(payload.get("livemode", False)),
            created=payload.get("created"),
            data_object=data_object if isinstance(data_object, dict) else {},
        )


class TicketSpec(BaseModel):
    """One seat as sent by the storefront in payment intent metadata"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    seat_id: Optional[str] = Field(default=None, alias="seatId")
    section: Optional[str] = None
    row: Optional[str] = None
    seat_number: Optional[str] = Field(default=None, alias="seatNumber")
    price: int = Field(default=0, ge=0)  # minor currency units

    @field_validator("seat_id", "section", "row", "seat_number", mode="before")
    @classmethod
    def stringify(cls, v):
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("price", mode="before")
    @classmethod
    def parse_price(cls, v):
        # Unparseable prices become 0; negative ones still fail the ge=0 check
        if v is None or isinstance(v, bool):
            return 0
        try:
            return int(float(v))
        except (TypeError, ValueError, OverflowError):
            return 0
