from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

AlertSubject = Literal["price", "stock"]
ContactChannel = Literal["email", "sms"]
ClaimOutcome = Literal["claimed", "already_claimed", "condition_no_longer_met", "not_found"]
TriggerKind = Literal["price", "stock", "review_request"]
DispatchRunStatus = Literal["running", "completed", "cancelled"]


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_identifier(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    if not normalized:
        raise ValueError("identifiers cannot be blank")
    return normalized


class AlertCreateRequest(BaseModel):
    subject_type: AlertSubject
    product_id: str = Field(min_length=1, max_length=128)
    variant_id: str | None = Field(default=None, max_length=128)
    channel: ContactChannel = "email"
    user_id: str | None = Field(default=None, max_length=128)
    email: str | None = Field(default=None, max_length=256)
    phone: str | None = Field(default=None, max_length=32)
    threshold: float | None = Field(default=None, gt=0)

    @field_validator("product_id", "variant_id", "user_id")
    @classmethod
    def _normalize_ids(cls, value: str | None) -> str | None:
        return _normalize_identifier(value)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if "@" not in normalized or normalized.startswith("@") or normalized.endswith("@"):
            raise ValueError("email must be a valid address")
        return normalized

    @field_validator("phone")
    @classmethod
    def _normalize_phone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) < 7:
            raise ValueError("phone must contain at least 7 digits")
        return ("+" if normalized.startswith("+") else "") + digits

    @model_validator(mode="after")
    def _validate_contact_and_threshold(self) -> AlertCreateRequest:
        bare_contact = self.email if self.channel == "email" else self.phone
        if self.user_id is not None:
            if self.email is not None or self.phone is not None:
                raise ValueError("provide either user_id or a bare email/phone contact, not both")
        elif bare_contact is None:
            raise ValueError(f"{self.channel} alerts without user_id require a matching contact")
        elif self.email is not None and self.phone is not None:
            raise ValueError("provide a single bare contact matching the channel")

        if self.subject_type == "price" and self.threshold is None:
            raise ValueError("price alerts require a threshold")
        if self.subject_type == "stock" and self.threshold is not None:
            raise ValueError("stock alerts cannot carry a threshold")
        return self


class AlertResponse(BaseModel):
    alert_id: str
    subject_type: AlertSubject
    product_id: str
    variant_id: str | None = None
    channel: ContactChannel
    user_id: str | None = None
    contact_masked: str | None = None
    threshold: float | None = None
    notified_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class AlertCreateResponse(AlertResponse):
    unsub_token: str


class AlertListResponse(BaseModel):
    items: list[AlertResponse]


class UnsubscribeResponse(BaseModel):
    alert_id: str
    deleted: bool


class CatalogChangeRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=128)
    variant_id: str | None = Field(default=None, max_length=128)
    product_name: str | None = Field(default=None, max_length=256)
    product_slug: str | None = Field(default=None, max_length=256)
    new_price: float | None = Field(default=None, ge=0)
    new_stock: int | None = Field(default=None, ge=0)
    previous_stock: int | None = Field(default=None, ge=0)

    @field_validator("product_id", "variant_id")
    @classmethod
    def _normalize_ids(cls, value: str | None) -> str | None:
        return _normalize_identifier(value)

    @model_validator(mode="after")
    def _validate_delta(self) -> CatalogChangeRequest:
        if self.new_price is None and self.new_stock is None:
            raise ValueError("catalog change requires new_price or new_stock")
        return self


class CatalogBulkChangeRequest(BaseModel):
    changes: list[CatalogChangeRequest] = Field(min_length=1, max_length=500)


class OrderDeliveredRequest(BaseModel):
    delivered_at: datetime
    email: str | None = Field(default=None, max_length=256)
    customer_name: str | None = Field(default=None, max_length=256)

    @field_validator("delivered_at")
    @classmethod
    def _normalize_delivered_at(cls, value: datetime) -> datetime:
        return _normalize_utc(value)  # type: ignore[return-value]


class ReviewJobResponse(BaseModel):
    order_id: str
    delivered_at: datetime
    review_request_sent_at: datetime | None = None
    contact_masked: str | None = None


class ReviewSweepRequest(BaseModel):
    now_override: datetime | None = None
    grace_days: int | None = Field(default=None, ge=0, le=365)

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class DispatchSummaryResponse(BaseModel):
    run_id: str
    trigger_kind: TriggerKind
    status: DispatchRunStatus
    evaluated_count: int
    claimed_count: int
    sent_count: int
    skipped_raced_count: int
    skipped_stale_count: int
    failed_transport_count: int
    failed_validation_count: int
    failed_storage_count: int
    cancelled_count: int
    started_at: datetime
    finished_at: datetime | None


class CatalogDispatchResponse(BaseModel):
    items: list[DispatchSummaryResponse]
    sent_count: int
