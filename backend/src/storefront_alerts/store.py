from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from .models import AlertSubject, ClaimOutcome, ContactChannel, DispatchRunStatus, TriggerKind


class AlertNotFoundError(KeyError):
    """Raised when an alert id or unsubscribe token does not resolve to a live alert."""


class ReviewJobNotFoundError(KeyError):
    """Raised when an operation references an order without a review job."""


class AlertValidationError(ValueError):
    """Raised when an alert cannot be created against the current catalog."""


class DuplicateTokenError(RuntimeError):
    """Raised when a freshly generated unsubscribe token collides with an existing one."""


class TransientStoreError(RuntimeError):
    """Raised by store backends for failures that are safe to retry (locks, serialization)."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class AlertRecord:
    alert_id: str
    subject_type: AlertSubject
    product_id: str
    variant_id: str | None
    channel: ContactChannel
    user_id: str | None
    email: str | None
    phone: str | None
    threshold: float | None
    unsub_token: str
    unsub_token_hash: str
    notified_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def pending(self) -> bool:
        return self.notified_at is None


@dataclass(frozen=True)
class CatalogState:
    product_id: str
    variant_id: str | None
    product_name: str | None
    product_slug: str | None
    price: float | None
    stock: int | None
    updated_at: datetime


@dataclass(frozen=True)
class ReviewJobRecord:
    order_id: str
    email: str | None
    customer_name: str | None
    delivered_at: datetime
    review_request_sent_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ClaimScope:
    """Catalog position whose current state must still satisfy the alert at claim time."""

    product_id: str
    variant_id: str | None = None


@dataclass(frozen=True)
class ClaimResult:
    outcome: ClaimOutcome
    record: AlertRecord | ReviewJobRecord | None = None
    state: CatalogState | None = None


@dataclass(frozen=True)
class DispatchCounts:
    evaluated: int = 0
    claimed: int = 0
    sent: int = 0
    skipped_raced: int = 0
    skipped_stale: int = 0
    failed_transport: int = 0
    failed_validation: int = 0
    failed_storage: int = 0
    cancelled: int = 0


@dataclass(frozen=True)
class DispatchRunRecord:
    run_id: str
    trigger_kind: TriggerKind
    status: DispatchRunStatus
    counts: DispatchCounts
    started_at: datetime
    finished_at: datetime | None = None


def alert_condition_holds(subject_type: str, threshold: float | None, state: CatalogState | None) -> bool:
    if state is None:
        return False
    if subject_type == "price":
        return threshold is not None and state.price is not None and state.price <= threshold
    return state.stock is not None and state.stock > 0


class AlertStore(Protocol):
    def reset(self) -> None: ...

    def create_alert(
        self,
        *,
        subject_type: AlertSubject,
        product_id: str,
        variant_id: str | None,
        channel: ContactChannel,
        user_id: str | None,
        email: str | None,
        phone: str | None,
        threshold: float | None,
        unsub_token: str,
        unsub_token_hash: str,
    ) -> AlertRecord: ...

    def get_alert(self, alert_id: str) -> AlertRecord | None: ...

    def list_alerts_for_product(self, product_id: str) -> list[AlertRecord]: ...

    def find_alert_by_token_hash(self, unsub_token_hash: str) -> AlertRecord | None: ...

    def delete_alert(self, alert_id: str) -> bool: ...

    def select_pending_alerts(
        self,
        *,
        subject_type: AlertSubject,
        product_id: str,
        variant_id: str | None,
    ) -> list[AlertRecord]: ...

    def claim_alert(
        self,
        alert_id: str,
        *,
        subject_type: AlertSubject,
        scope: ClaimScope,
        now: datetime,
    ) -> ClaimResult: ...

    def record_catalog_state(
        self,
        *,
        product_id: str,
        variant_id: str | None,
        product_name: str | None,
        product_slug: str | None,
        price: float | None,
        stock: int | None,
        now: datetime,
    ) -> CatalogState | None: ...

    def get_catalog_state(self, product_id: str, variant_id: str | None) -> CatalogState | None: ...

    def upsert_review_job(
        self,
        order_id: str,
        *,
        delivered_at: datetime,
        email: str | None,
        customer_name: str | None,
        now: datetime,
    ) -> ReviewJobRecord: ...

    def get_review_job(self, order_id: str) -> ReviewJobRecord | None: ...

    def select_due_review_jobs(self, *, cutoff: datetime, limit: int | None = None) -> list[str]: ...

    def claim_review_job(self, order_id: str, *, cutoff: datetime, now: datetime) -> ClaimResult: ...

    def create_dispatch_run(self, *, trigger_kind: TriggerKind, started_at: datetime) -> str: ...

    def finalize_dispatch_run(
        self,
        run_id: str,
        *,
        status: DispatchRunStatus,
        counts: DispatchCounts,
        finished_at: datetime,
    ) -> DispatchRunRecord: ...

    def get_latest_dispatch_run(self, trigger_kind: TriggerKind | None = None) -> DispatchRunRecord | None: ...


class InMemoryAlertStore:
    """Lock-guarded in-memory store; every claim is a check-and-set under the lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._alert_counter = count(1)
        self._run_counter = count(1)
        self._alerts: dict[str, AlertRecord] = {}
        self._token_index: dict[str, str] = {}
        self._catalog: dict[tuple[str, str | None], CatalogState] = {}
        self._review_jobs: dict[str, ReviewJobRecord] = {}
        self._runs: dict[str, DispatchRunRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._alert_counter = count(1)
            self._run_counter = count(1)
            self._alerts.clear()
            self._token_index.clear()
            self._catalog.clear()
            self._review_jobs.clear()
            self._runs.clear()

    def create_alert(
        self,
        *,
        subject_type: AlertSubject,
        product_id: str,
        variant_id: str | None,
        channel: ContactChannel,
        user_id: str | None,
        email: str | None,
        phone: str | None,
        threshold: float | None,
        unsub_token: str,
        unsub_token_hash: str,
    ) -> AlertRecord:
        with self._lock:
            if unsub_token_hash in self._token_index:
                raise DuplicateTokenError("unsubscribe token already issued")
            now = _now_utc()
            record = AlertRecord(
                alert_id=f"alrt_{next(self._alert_counter):06d}",
                subject_type=subject_type,
                product_id=product_id,
                variant_id=variant_id,
                channel=channel,
                user_id=user_id,
                email=email,
                phone=phone,
                threshold=threshold,
                unsub_token=unsub_token,
                unsub_token_hash=unsub_token_hash,
                notified_at=None,
                created_at=now,
                updated_at=now,
            )
            self._alerts[record.alert_id] = record
            self._token_index[unsub_token_hash] = record.alert_id
            return record

    def get_alert(self, alert_id: str) -> AlertRecord | None:
        with self._lock:
            return self._alerts.get(alert_id)

    def list_alerts_for_product(self, product_id: str) -> list[AlertRecord]:
        with self._lock:
            return sorted(
                (value for value in self._alerts.values() if value.product_id == product_id),
                key=lambda value: value.alert_id,
            )

    def find_alert_by_token_hash(self, unsub_token_hash: str) -> AlertRecord | None:
        with self._lock:
            alert_id = self._token_index.get(unsub_token_hash)
            if alert_id is None:
                return None
            return self._alerts.get(alert_id)

    def delete_alert(self, alert_id: str) -> bool:
        with self._lock:
            record = self._alerts.pop(alert_id, None)
            if record is None:
                return False
            self._token_index.pop(record.unsub_token_hash, None)
            return True

    def select_pending_alerts(
        self,
        *,
        subject_type: AlertSubject,
        product_id: str,
        variant_id: str | None,
    ) -> list[AlertRecord]:
        allowed_variants = {None, variant_id}
        with self._lock:
            return sorted(
                (
                    value
                    for value in self._alerts.values()
                    if value.pending
                    and value.subject_type == subject_type
                    and value.product_id == product_id
                    and value.variant_id in allowed_variants
                ),
                key=lambda value: value.alert_id,
            )

    def claim_alert(
        self,
        alert_id: str,
        *,
        subject_type: AlertSubject,
        scope: ClaimScope,
        now: datetime,
    ) -> ClaimResult:
        with self._lock:
            record = self._alerts.get(alert_id)
            if record is None:
                return ClaimResult(outcome="not_found")
            if not record.pending:
                return ClaimResult(outcome="already_claimed", record=record)
            state = self._catalog.get((scope.product_id, scope.variant_id))
            if record.subject_type != subject_type or not alert_condition_holds(
                record.subject_type, record.threshold, state
            ):
                return ClaimResult(outcome="condition_no_longer_met", record=record, state=state)
            claimed_at = _coerce_utc(now)
            claimed = replace(record, notified_at=claimed_at, updated_at=claimed_at)
            self._alerts[alert_id] = claimed
            return ClaimResult(outcome="claimed", record=claimed, state=state)

    def record_catalog_state(
        self,
        *,
        product_id: str,
        variant_id: str | None,
        product_name: str | None,
        product_slug: str | None,
        price: float | None,
        stock: int | None,
        now: datetime,
    ) -> CatalogState | None:
        key = (product_id, variant_id)
        with self._lock:
            previous = self._catalog.get(key)
            self._catalog[key] = CatalogState(
                product_id=product_id,
                variant_id=variant_id,
                product_name=product_name if product_name is not None else (previous.product_name if previous else None),
                product_slug=product_slug if product_slug is not None else (previous.product_slug if previous else None),
                price=price if price is not None else (previous.price if previous else None),
                stock=stock if stock is not None else (previous.stock if previous else None),
                updated_at=_coerce_utc(now),
            )
            return previous

    def get_catalog_state(self, product_id: str, variant_id: str | None) -> CatalogState | None:
        with self._lock:
            return self._catalog.get((product_id, variant_id))

    def upsert_review_job(
        self,
        order_id: str,
        *,
        delivered_at: datetime,
        email: str | None,
        customer_name: str | None,
        now: datetime,
    ) -> ReviewJobRecord:
        with self._lock:
            existing = self._review_jobs.get(order_id)
            if existing is None:
                record = ReviewJobRecord(
                    order_id=order_id,
                    email=email,
                    customer_name=customer_name,
                    delivered_at=_coerce_utc(delivered_at),
                    review_request_sent_at=None,
                    created_at=_coerce_utc(now),
                    updated_at=_coerce_utc(now),
                )
            elif existing.review_request_sent_at is not None:
                return existing
            else:
                record = replace(
                    existing,
                    email=email if email is not None else existing.email,
                    customer_name=customer_name if customer_name is not None else existing.customer_name,
                    delivered_at=_coerce_utc(delivered_at),
                    updated_at=_coerce_utc(now),
                )
            self._review_jobs[order_id] = record
            return record

    def get_review_job(self, order_id: str) -> ReviewJobRecord | None:
        with self._lock:
            return self._review_jobs.get(order_id)

    def select_due_review_jobs(self, *, cutoff: datetime, limit: int | None = None) -> list[str]:
        normalized_cutoff = _coerce_utc(cutoff)
        with self._lock:
            due = sorted(
                (
                    value
                    for value in self._review_jobs.values()
                    if value.review_request_sent_at is None and value.delivered_at <= normalized_cutoff
                ),
                key=lambda value: (value.delivered_at, value.order_id),
            )
        if limit is not None:
            due = due[:limit]
        return [value.order_id for value in due]

    def claim_review_job(self, order_id: str, *, cutoff: datetime, now: datetime) -> ClaimResult:
        with self._lock:
            record = self._review_jobs.get(order_id)
            if record is None:
                return ClaimResult(outcome="not_found")
            if record.review_request_sent_at is not None:
                return ClaimResult(outcome="already_claimed", record=record)
            if record.delivered_at > _coerce_utc(cutoff):
                return ClaimResult(outcome="condition_no_longer_met", record=record)
            claimed_at = _coerce_utc(now)
            claimed = replace(record, review_request_sent_at=claimed_at, updated_at=claimed_at)
            self._review_jobs[order_id] = claimed
            return ClaimResult(outcome="claimed", record=claimed)

    def create_dispatch_run(self, *, trigger_kind: TriggerKind, started_at: datetime) -> str:
        with self._lock:
            run_id = f"drun_{next(self._run_counter):06d}"
            self._runs[run_id] = DispatchRunRecord(
                run_id=run_id,
                trigger_kind=trigger_kind,
                status="running",
                counts=DispatchCounts(),
                started_at=_coerce_utc(started_at),
            )
            return run_id

    def finalize_dispatch_run(
        self,
        run_id: str,
        *,
        status: DispatchRunStatus,
        counts: DispatchCounts,
        finished_at: datetime,
    ) -> DispatchRunRecord:
        with self._lock:
            record = replace(
                self._runs[run_id],
                status=status,
                counts=counts,
                finished_at=_coerce_utc(finished_at),
            )
            self._runs[run_id] = record
            return record

    def get_latest_dispatch_run(self, trigger_kind: TriggerKind | None = None) -> DispatchRunRecord | None:
        with self._lock:
            runs = [
                value
                for value in self._runs.values()
                if trigger_kind is None or value.trigger_kind == trigger_kind
            ]
        if not runs:
            return None
        return max(runs, key=lambda value: (value.started_at, value.run_id))
