from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Event
from typing import Callable, Sequence

from .config import Settings
from .contacts import ContactDirectory, InMemoryContactDirectory
from .dispatch import AlertTrigger, DispatchCoordinator, RetryPolicy, ReviewRequestTrigger
from .evaluation import CatalogChange, ThresholdEvaluator
from .models import AlertCreateRequest, CatalogChangeRequest, OrderDeliveredRequest, TriggerKind
from .notifier import HttpNotifierSender, NotifierSender, StubNotifierSender
from .scanning import DEFAULT_REVIEW_GRACE, DueJobScanner
from .store import (
    AlertNotFoundError,
    AlertRecord,
    AlertStore,
    AlertValidationError,
    ClaimScope,
    DispatchRunRecord,
    DuplicateTokenError,
    ReviewJobNotFoundError,
    ReviewJobRecord,
    _now_utc,
)
from .store_backends import create_alert_store
from .templates import StorefrontLinks
from .unsubscribe_tokens import UnsubscribeTokenService

logger = logging.getLogger(__name__)

TOKEN_ISSUE_ATTEMPTS = 3


@dataclass(frozen=True)
class CatalogDispatchResult:
    runs: list[DispatchRunRecord]

    @property
    def sent_count(self) -> int:
        return sum(run.counts.sent for run in self.runs)


class AlertWorkflowService:
    """Subscriber-facing alert lifecycle plus the catalog and fulfillment entry points."""

    def __init__(
        self,
        *,
        store: AlertStore,
        sender: NotifierSender,
        executor: Executor,
        contacts: ContactDirectory | None = None,
        links: StorefrontLinks | None = None,
        review_grace: timedelta = DEFAULT_REVIEW_GRACE,
        clock: Callable[[], datetime] = _now_utc,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._contacts = contacts if contacts is not None else InMemoryContactDirectory()
        self._links = links or StorefrontLinks(web_url="")
        self._review_grace = review_grace
        self._clock = clock
        self._tokens = UnsubscribeTokenService(store)
        self._evaluator = ThresholdEvaluator(store)
        self._coordinator = DispatchCoordinator(
            store=store,
            sender=sender,
            executor=executor,
            clock=clock,
            retry_policy=retry_policy,
        )

    @property
    def store(self) -> AlertStore:
        return self._store

    @property
    def contacts(self) -> ContactDirectory:
        return self._contacts

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def create_alert(self, payload: AlertCreateRequest) -> AlertRecord:
        if payload.variant_id is not None:
            state = self._store.get_catalog_state(payload.product_id, payload.variant_id)
            if state is None:
                raise AlertValidationError(
                    f"variant {payload.variant_id} does not belong to product {payload.product_id}"
                )

        for attempt in range(1, TOKEN_ISSUE_ATTEMPTS + 1):
            token, token_hash = self._tokens.generate()
            try:
                return self._store.create_alert(
                    subject_type=payload.subject_type,
                    product_id=payload.product_id,
                    variant_id=payload.variant_id,
                    channel=payload.channel,
                    user_id=payload.user_id,
                    email=payload.email,
                    phone=payload.phone,
                    threshold=payload.threshold,
                    unsub_token=token,
                    unsub_token_hash=token_hash,
                )
            except DuplicateTokenError:
                if attempt == TOKEN_ISSUE_ATTEMPTS:
                    raise
                logger.warning("unsubscribe token collision, regenerating (attempt %d)", attempt)
        raise RuntimeError("unreachable")

    def get_alert(self, alert_id: str) -> AlertRecord:
        record = self._store.get_alert(alert_id)
        if record is None:
            raise AlertNotFoundError(alert_id)
        return record

    def list_product_alerts(self, product_id: str) -> list[AlertRecord]:
        return self._store.list_alerts_for_product(product_id)

    def delete_alert(self, alert_id: str) -> None:
        if not self._store.delete_alert(alert_id):
            raise AlertNotFoundError(alert_id)

    def redeem_unsubscribe_token(self, token: str) -> str:
        alert_id = self._tokens.validate(token)
        # A concurrent redemption may delete the row between lookup and delete.
        if not self._store.delete_alert(alert_id):
            raise AlertNotFoundError("unsubscribe token")
        logger.info("alert %s removed via unsubscribe token", alert_id)
        return alert_id

    def apply_catalog_change(
        self,
        payload: CatalogChangeRequest,
        *,
        cancel_event: Event | None = None,
    ) -> CatalogDispatchResult:
        previous = self._store.record_catalog_state(
            product_id=payload.product_id,
            variant_id=payload.variant_id,
            product_name=payload.product_name,
            product_slug=payload.product_slug,
            price=payload.new_price,
            stock=payload.new_stock,
            now=self._clock(),
        )
        previous_stock = payload.previous_stock
        if previous_stock is None and previous is not None:
            previous_stock = previous.stock

        evaluation = self._evaluator.evaluate(
            CatalogChange(
                product_id=payload.product_id,
                variant_id=payload.variant_id,
                new_price=payload.new_price,
                new_stock=payload.new_stock,
                previous_stock=previous_stock,
            )
        )
        scope = ClaimScope(product_id=payload.product_id, variant_id=payload.variant_id)
        runs: list[DispatchRunRecord] = []
        if evaluation.price_alert_ids:
            trigger = AlertTrigger(self._store, self._contacts, self._links, subject_type="price", scope=scope)
            runs.append(self._coordinator.dispatch(trigger, evaluation.price_alert_ids, cancel_event=cancel_event))
        if evaluation.stock_alert_ids:
            trigger = AlertTrigger(self._store, self._contacts, self._links, subject_type="stock", scope=scope)
            runs.append(self._coordinator.dispatch(trigger, evaluation.stock_alert_ids, cancel_event=cancel_event))
        return CatalogDispatchResult(runs=runs)

    def apply_bulk_catalog_changes(
        self,
        changes: Sequence[CatalogChangeRequest],
        *,
        cancel_event: Event | None = None,
    ) -> CatalogDispatchResult:
        # Applied in order so a later change for the same product sees the earlier snapshot.
        runs: list[DispatchRunRecord] = []
        for change in changes:
            runs.extend(self.apply_catalog_change(change, cancel_event=cancel_event).runs)
        return CatalogDispatchResult(runs=runs)

    def mark_order_delivered(self, order_id: str, payload: OrderDeliveredRequest) -> ReviewJobRecord:
        return self._store.upsert_review_job(
            order_id,
            delivered_at=payload.delivered_at,
            email=payload.email,
            customer_name=payload.customer_name,
            now=self._clock(),
        )

    def get_review_job(self, order_id: str) -> ReviewJobRecord:
        record = self._store.get_review_job(order_id)
        if record is None:
            raise ReviewJobNotFoundError(order_id)
        return record

    def run_review_sweep(
        self,
        *,
        now_override: datetime | None = None,
        grace_days: int | None = None,
        limit: int | None = None,
        cancel_event: Event | None = None,
    ) -> DispatchRunRecord:
        now = now_override or self._clock()
        grace = timedelta(days=grace_days) if grace_days is not None else self._review_grace
        scanner = DueJobScanner(self._store, grace=grace)
        candidate_ids = scanner.scan(now, limit=limit)
        trigger = ReviewRequestTrigger(self._store, self._links, cutoff=scanner.cutoff(now))
        return self._coordinator.dispatch(trigger, candidate_ids, cancel_event=cancel_event)

    def latest_run(self, trigger_kind: TriggerKind | None = None) -> DispatchRunRecord | None:
        return self._store.get_latest_dispatch_run(trigger_kind)


def create_notifier(settings: Settings) -> NotifierSender:
    if settings.notifier_sender_type == "http":
        return HttpNotifierSender(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            channels=settings.notifier_channels(),
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return StubNotifierSender(enabled=settings.notifier_enabled, channel=settings.notifier_channel)


def create_alert_service(settings: Settings, *, sender: NotifierSender | None = None) -> AlertWorkflowService:
    return AlertWorkflowService(
        store=create_alert_store(backend=settings.alert_store_backend, database_url=settings.database_url),
        sender=sender or create_notifier(settings),
        executor=ThreadPoolExecutor(
            max_workers=settings.dispatch_max_workers,
            thread_name_prefix="alert-dispatch",
        ),
        links=StorefrontLinks(web_url=settings.storefront_web_url),
        review_grace=timedelta(days=settings.review_request_grace_days),
        retry_policy=RetryPolicy(
            attempts=settings.claim_retry_attempts,
            base_delay_seconds=settings.claim_retry_base_seconds,
        ),
    )
