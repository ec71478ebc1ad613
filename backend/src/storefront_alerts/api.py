from __future__ import annotations

import hmac

from fastapi import APIRouter, HTTPException, Request, Response, status

from .config import get_settings
from .contacts import InMemoryContactDirectory
from .models import (
    AlertCreateRequest,
    AlertCreateResponse,
    AlertListResponse,
    AlertResponse,
    CatalogBulkChangeRequest,
    CatalogChangeRequest,
    CatalogDispatchResponse,
    DispatchSummaryResponse,
    OrderDeliveredRequest,
    ReviewJobResponse,
    ReviewSweepRequest,
    TriggerKind,
    UnsubscribeResponse,
)
from .notifier import mask_destination
from .service import AlertWorkflowService, CatalogDispatchResult, create_alert_service
from .store import (
    AlertNotFoundError,
    AlertRecord,
    AlertValidationError,
    DispatchRunRecord,
    ReviewJobNotFoundError,
    ReviewJobRecord,
)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/alerts", tags=["alerts"])
alert_service: AlertWorkflowService = create_alert_service(_settings)


def reset_runtime_state_for_tests() -> None:
    alert_service.store.reset()
    contacts = alert_service.contacts
    if isinstance(contacts, InMemoryContactDirectory):
        contacts.reset()


def _require_job_token(request: Request) -> None:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ")
    if not token:
        raise HTTPException(401, "job token required")
    if not hmac.compare_digest(token.encode("utf-8"), _settings.internal_job_token.encode("utf-8")):
        raise HTTPException(401, "invalid job token")


def _alert_contact_masked(record: AlertRecord) -> str | None:
    if record.user_id is not None:
        return None
    destination = record.email if record.channel == "email" else record.phone
    if destination is None:
        return None
    return mask_destination(destination, record.channel)


def _to_alert_response(record: AlertRecord) -> AlertResponse:
    return AlertResponse(
        alert_id=record.alert_id,
        subject_type=record.subject_type,
        product_id=record.product_id,
        variant_id=record.variant_id,
        channel=record.channel,
        user_id=record.user_id,
        contact_masked=_alert_contact_masked(record),
        threshold=record.threshold,
        notified_at=record.notified_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _to_review_job_response(record: ReviewJobRecord) -> ReviewJobResponse:
    return ReviewJobResponse(
        order_id=record.order_id,
        delivered_at=record.delivered_at,
        review_request_sent_at=record.review_request_sent_at,
        contact_masked=mask_destination(record.email, "email") if record.email else None,
    )


def _to_summary(record: DispatchRunRecord) -> DispatchSummaryResponse:
    counts = record.counts
    return DispatchSummaryResponse(
        run_id=record.run_id,
        trigger_kind=record.trigger_kind,
        status=record.status,
        evaluated_count=counts.evaluated,
        claimed_count=counts.claimed,
        sent_count=counts.sent,
        skipped_raced_count=counts.skipped_raced,
        skipped_stale_count=counts.skipped_stale,
        failed_transport_count=counts.failed_transport,
        failed_validation_count=counts.failed_validation,
        failed_storage_count=counts.failed_storage,
        cancelled_count=counts.cancelled,
        started_at=record.started_at,
        finished_at=record.finished_at,
    )


def _to_catalog_dispatch_response(result: CatalogDispatchResult) -> CatalogDispatchResponse:
    return CatalogDispatchResponse(
        items=[_to_summary(run) for run in result.runs],
        sent_count=result.sent_count,
    )


@router.post("/subscriptions", response_model=AlertCreateResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(payload: AlertCreateRequest) -> AlertCreateResponse:
    try:
        record = alert_service.create_alert(payload)
    except AlertValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return AlertCreateResponse(
        **_to_alert_response(record).model_dump(),
        unsub_token=record.unsub_token,
    )


@router.get("/subscriptions/{alert_id}", response_model=AlertResponse)
def get_subscription(alert_id: str) -> AlertResponse:
    try:
        return _to_alert_response(alert_service.get_alert(alert_id))
    except AlertNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"alert not found: {alert_id}") from exc


@router.delete("/subscriptions/{alert_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_subscription(alert_id: str) -> Response:
    try:
        alert_service.delete_alert(alert_id)
    except AlertNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"alert not found: {alert_id}") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/products/{product_id}/subscriptions", response_model=AlertListResponse)
def list_product_subscriptions(product_id: str) -> AlertListResponse:
    records = alert_service.list_product_alerts(product_id)
    return AlertListResponse(items=[_to_alert_response(record) for record in records])


@router.post("/unsubscribe/{token}", response_model=UnsubscribeResponse)
def redeem_unsubscribe_token(token: str) -> UnsubscribeResponse:
    try:
        alert_id = alert_service.redeem_unsubscribe_token(token)
    except AlertNotFoundError as exc:
        raise HTTPException(status_code=404, detail="unsubscribe link is invalid or already used") from exc
    return UnsubscribeResponse(alert_id=alert_id, deleted=True)


@router.post("/catalog/changes", response_model=CatalogDispatchResponse)
def apply_catalog_change(request: Request, payload: CatalogChangeRequest) -> CatalogDispatchResponse:
    _require_job_token(request)
    return _to_catalog_dispatch_response(alert_service.apply_catalog_change(payload))


@router.post("/catalog/changes/bulk", response_model=CatalogDispatchResponse)
def apply_bulk_catalog_changes(request: Request, payload: CatalogBulkChangeRequest) -> CatalogDispatchResponse:
    _require_job_token(request)
    return _to_catalog_dispatch_response(alert_service.apply_bulk_catalog_changes(payload.changes))


@router.post("/orders/{order_id}/delivered", response_model=ReviewJobResponse)
def mark_order_delivered(request: Request, order_id: str, payload: OrderDeliveredRequest) -> ReviewJobResponse:
    _require_job_token(request)
    return _to_review_job_response(alert_service.mark_order_delivered(order_id, payload))


@router.get("/orders/{order_id}/review-job", response_model=ReviewJobResponse)
def get_review_job(request: Request, order_id: str) -> ReviewJobResponse:
    _require_job_token(request)
    try:
        return _to_review_job_response(alert_service.get_review_job(order_id))
    except ReviewJobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"review job not found: {order_id}") from exc


@router.post("/jobs/review-requests/run", response_model=DispatchSummaryResponse)
def run_review_requests(
    request: Request,
    payload: ReviewSweepRequest | None = None,
) -> DispatchSummaryResponse:
    _require_job_token(request)
    request_payload = payload or ReviewSweepRequest()
    record = alert_service.run_review_sweep(
        now_override=request_payload.now_override,
        grace_days=request_payload.grace_days,
    )
    return _to_summary(record)


@router.get("/jobs/runs/latest", response_model=DispatchSummaryResponse)
def get_latest_run(request: Request, kind: TriggerKind | None = None) -> DispatchSummaryResponse:
    _require_job_token(request)
    record = alert_service.latest_run(kind)
    if record is None:
        raise HTTPException(status_code=404, detail="no dispatch runs recorded")
    return _to_summary(record)
