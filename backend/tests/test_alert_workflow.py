from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from storefront_alerts.config import Settings
from storefront_alerts.contacts import InMemoryContactDirectory
from storefront_alerts.dispatch import RetryPolicy
from storefront_alerts.models import AlertCreateRequest, CatalogChangeRequest, OrderDeliveredRequest
from storefront_alerts.notifier import HttpNotifierSender, StubNotifierSender
from storefront_alerts.service import AlertWorkflowService, create_alert_service, create_notifier
from storefront_alerts.store import (
    AlertNotFoundError,
    AlertStore,
    AlertValidationError,
    InMemoryAlertStore,
    ReviewJobNotFoundError,
)
from storefront_alerts.store_backends import SqlAlchemyAlertStore
from storefront_alerts.templates import StorefrontLinks

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _make_service(
    store: AlertStore | None = None,
    *,
    sender: StubNotifierSender | None = None,
    contacts: InMemoryContactDirectory | None = None,
    clock=lambda: NOW,  # type: ignore[no-untyped-def]
) -> tuple[AlertWorkflowService, StubNotifierSender]:
    active_sender = sender or StubNotifierSender(enabled=True)
    service = AlertWorkflowService(
        store=store or InMemoryAlertStore(),
        sender=active_sender,
        executor=ThreadPoolExecutor(max_workers=4),
        contacts=contacts,
        links=StorefrontLinks(web_url="https://shop.example.test"),
        clock=clock,
        retry_policy=RetryPolicy(sleep=lambda _: None),
    )
    return service, active_sender


def _price_alert(threshold: float = 50.0, **overrides: object) -> AlertCreateRequest:
    payload: dict[str, object] = {
        "subject_type": "price",
        "product_id": "prod-1",
        "channel": "email",
        "email": "shopper@example.com",
        "threshold": threshold,
    }
    payload.update(overrides)
    return AlertCreateRequest(**payload)


def _stock_alert(**overrides: object) -> AlertCreateRequest:
    payload: dict[str, object] = {
        "subject_type": "stock",
        "product_id": "prod-1",
        "channel": "email",
        "email": "shopper@example.com",
    }
    payload.update(overrides)
    return AlertCreateRequest(**payload)


def _change(**fields: object) -> CatalogChangeRequest:
    payload: dict[str, object] = {
        "product_id": "prod-1",
        "product_name": "Trail Runner",
        "product_slug": "trail-runner",
    }
    payload.update(fields)
    return CatalogChangeRequest(**payload)


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_price_drop_below_threshold_notifies_exactly_once(backend: str, tmp_path: Path) -> None:
    store: AlertStore = (
        SqlAlchemyAlertStore(f"sqlite:///{tmp_path / 'alerts.db'}") if backend == "sqlite" else InMemoryAlertStore()
    )
    service, sender = _make_service(store)
    alert = service.create_alert(_price_alert(threshold=50.0))
    service.apply_catalog_change(_change(new_price=60.0))

    first = service.apply_catalog_change(_change(new_price=45.0))
    second = service.apply_catalog_change(_change(new_price=45.0))

    assert first.sent_count == 1
    assert [run.trigger_kind for run in first.runs] == ["price"]
    assert second.runs == []
    assert len(sender.deliveries) == 1
    assert service.get_alert(alert.alert_id).notified_at == NOW


def test_price_above_threshold_selects_nothing() -> None:
    service, sender = _make_service()
    service.create_alert(_price_alert(threshold=50.0))

    result = service.apply_catalog_change(_change(new_price=50.01))

    assert result.runs == []
    assert sender.deliveries == []


def test_duplicated_concurrent_restock_events_send_once() -> None:
    service, sender = _make_service()
    service.apply_catalog_change(_change(new_stock=0))
    service.create_alert(_stock_alert())
    barrier = threading.Barrier(2)

    def _restock(_: int):  # type: ignore[no-untyped-def]
        barrier.wait()
        return service.apply_catalog_change(_change(new_stock=5, previous_stock=0))

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(_restock, range(2)))

    assert sum(result.sent_count for result in results) == 1
    assert len(sender.deliveries) == 1
    assert sender.deliveries[0].template_id == "stock-back"


def test_restock_uses_stored_previous_stock_when_the_event_omits_it() -> None:
    service, sender = _make_service()
    service.apply_catalog_change(_change(new_stock=3))
    service.create_alert(_stock_alert())

    still_in_stock = service.apply_catalog_change(_change(new_stock=7))
    service.apply_catalog_change(_change(new_stock=0))
    restocked = service.apply_catalog_change(_change(new_stock=2))

    assert still_in_stock.runs == []
    assert restocked.sent_count == 1
    assert len(sender.deliveries) == 1


def test_variant_restock_reaches_product_wide_and_matching_variant_alerts() -> None:
    service, sender = _make_service()
    service.apply_catalog_change(_change(variant_id="size-9", new_stock=0))
    service.apply_catalog_change(_change(variant_id="size-10", new_stock=0))
    service.create_alert(_stock_alert(email="wide@example.com"))
    service.create_alert(_stock_alert(email="nine@example.com", variant_id="size-9"))
    service.create_alert(_stock_alert(email="ten@example.com", variant_id="size-10"))

    result = service.apply_catalog_change(_change(variant_id="size-9", new_stock=4))

    assert result.sent_count == 2
    assert sorted(item.destination for item in sender.deliveries) == ["nine@example.com", "wide@example.com"]


def test_variant_alert_requires_a_known_variant() -> None:
    service, _ = _make_service()

    with pytest.raises(AlertValidationError):
        service.create_alert(_stock_alert(variant_id="size-12"))


def test_user_alerts_resolve_contacts_through_the_directory() -> None:
    contacts = InMemoryContactDirectory()
    contacts.register("user-1", email="member@example.com")
    service, sender = _make_service(contacts=contacts)
    service.create_alert(_price_alert(threshold=20.0, email=None, user_id="user-1"))

    result = service.apply_catalog_change(_change(new_price=19.99))

    assert result.sent_count == 1
    assert sender.deliveries[0].destination == "member@example.com"


def test_redeeming_a_token_deletes_the_alert_and_second_redemption_is_not_found() -> None:
    service, _ = _make_service()
    alert = service.create_alert(_price_alert())

    assert service.redeem_unsubscribe_token(alert.unsub_token) == alert.alert_id
    with pytest.raises(AlertNotFoundError):
        service.redeem_unsubscribe_token(alert.unsub_token)
    with pytest.raises(AlertNotFoundError):
        service.get_alert(alert.alert_id)


def test_deleting_an_alert_invalidates_its_token() -> None:
    service, _ = _make_service()
    alert = service.create_alert(_stock_alert())

    service.delete_alert(alert.alert_id)

    with pytest.raises(AlertNotFoundError):
        service.redeem_unsubscribe_token(alert.unsub_token)
    with pytest.raises(AlertNotFoundError):
        service.delete_alert(alert.alert_id)


def test_list_product_alerts_includes_notified_alerts() -> None:
    service, _ = _make_service()
    first = service.create_alert(_price_alert(threshold=50.0))
    second = service.create_alert(_stock_alert())
    service.create_alert(_stock_alert(product_id="prod-2"))
    service.apply_catalog_change(_change(new_price=10.0))

    listed = service.list_product_alerts("prod-1")

    assert [item.alert_id for item in listed] == [first.alert_id, second.alert_id]
    assert listed[0].notified_at == NOW
    assert listed[1].pending


def test_bulk_changes_are_applied_in_order() -> None:
    service, sender = _make_service()
    service.apply_catalog_change(_change(new_stock=0))
    service.create_alert(_stock_alert())

    result = service.apply_bulk_catalog_changes(
        [
            _change(new_stock=4),
            _change(new_stock=0),
            _change(new_stock=6),
        ]
    )

    assert result.sent_count == 1
    assert len(sender.deliveries) == 1


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_review_request_sent_after_grace_period_and_not_repeated(backend: str, tmp_path: Path) -> None:
    store: AlertStore = (
        SqlAlchemyAlertStore(f"sqlite:///{tmp_path / 'alerts.db'}") if backend == "sqlite" else InMemoryAlertStore()
    )
    service, sender = _make_service(store)
    service.mark_order_delivered(
        "order-1",
        OrderDeliveredRequest(delivered_at=NOW - timedelta(days=4), email="buyer@example.com", customer_name="Ada"),
    )
    service.mark_order_delivered(
        "order-2",
        OrderDeliveredRequest(delivered_at=NOW - timedelta(days=2), email="late@example.com"),
    )

    first = service.run_review_sweep()
    second = service.run_review_sweep()

    assert first.counts.evaluated == 1
    assert first.counts.sent == 1
    assert service.get_review_job("order-1").review_request_sent_at == NOW
    assert service.get_review_job("order-2").review_request_sent_at is None
    assert second.counts.evaluated == 0
    assert second.counts.sent == 0
    assert [item.idempotency_key for item in sender.deliveries] == ["review-request:order-1"]


def test_review_sweep_accepts_clock_and_grace_overrides() -> None:
    service, sender = _make_service()
    service.mark_order_delivered(
        "order-1",
        OrderDeliveredRequest(delivered_at=NOW - timedelta(days=1), email="buyer@example.com"),
    )

    early = service.run_review_sweep(grace_days=0)
    future = service.run_review_sweep(now_override=NOW + timedelta(days=10))

    assert early.counts.sent == 1
    assert future.counts.evaluated == 0
    assert len(sender.deliveries) == 1
    assert service.latest_run("review_request") == future
    assert service.latest_run("price") is None


def test_review_job_lookup_raises_for_unknown_order() -> None:
    service, _ = _make_service()

    with pytest.raises(ReviewJobNotFoundError):
        service.get_review_job("order-404")


def test_create_notifier_follows_sender_type() -> None:
    stub = create_notifier(Settings(notifier_enabled=True))
    http = create_notifier(
        Settings(
            notifier_sender_type="http",
            notifier_api_base_url="https://notify.example.test",
            notifier_api_key="key-123",
        )
    )

    assert isinstance(stub, StubNotifierSender)
    assert isinstance(http, HttpNotifierSender)


def test_create_alert_service_wires_settings() -> None:
    service = create_alert_service(Settings(review_request_grace_days=5), sender=StubNotifierSender(enabled=True))
    try:
        assert isinstance(service.store, InMemoryAlertStore)
    finally:
        service.close()
