from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from storefront_alerts.contacts import InMemoryContactDirectory
from storefront_alerts.dispatch import (
    AlertTrigger,
    DispatchCoordinator,
    PreparedCandidate,
    RetryPolicy,
    ReviewRequestTrigger,
)
from storefront_alerts.notifier import NotificationRequest, NotificationResult, StubNotifierSender
from storefront_alerts.store import ClaimResult, ClaimScope, InMemoryAlertStore, TransientStoreError
from storefront_alerts.templates import StorefrontLinks
from storefront_alerts.unsubscribe_tokens import UnsubscribeTokenService

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
LINKS = StorefrontLinks(web_url="https://shop.example.test/")


class _FlakyClaimStore(InMemoryAlertStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures_left = failures
        self.claim_calls = 0

    def claim_alert(self, alert_id, *, subject_type, scope, now) -> ClaimResult:  # type: ignore[no-untyped-def]
        self.claim_calls += 1
        if self.failures_left > 0:
            self.failures_left -= 1
            raise TransientStoreError("database is locked")
        return super().claim_alert(alert_id, subject_type=subject_type, scope=scope, now=now)


class _RaisingSender:
    def send(self, request: NotificationRequest) -> NotificationResult:
        raise ConnectionResetError("socket closed mid-send")


class _UnreadableAlertStore(InMemoryAlertStore):
    def __init__(self, unreadable: str) -> None:
        super().__init__()
        self.unreadable = unreadable

    def get_alert(self, alert_id):  # type: ignore[no-untyped-def]
        if alert_id == self.unreadable:
            raise TransientStoreError("connection reset")
        return super().get_alert(alert_id)


class _BrokenContactDirectory(InMemoryContactDirectory):
    def lookup(self, user_id):  # type: ignore[no-untyped-def]
        raise RuntimeError("directory unavailable")


class _BrokenRenderTrigger(AlertTrigger):
    def render(self, result, prepared):  # type: ignore[no-untyped-def]
        raise KeyError("product_name")


def _create_alert(
    store: InMemoryAlertStore,
    *,
    subject_type: str = "price",
    email: str | None = "shopper@example.com",
    user_id: str | None = None,
    threshold: float | None = 50.0,
    product_id: str = "prod-1",
) -> str:
    token, token_hash = UnsubscribeTokenService(store).generate()
    record = store.create_alert(
        subject_type=subject_type,  # type: ignore[arg-type]
        product_id=product_id,
        variant_id=None,
        channel="email",
        user_id=user_id,
        email=email,
        phone=None,
        threshold=threshold,
        unsub_token=token,
        unsub_token_hash=token_hash,
    )
    return record.alert_id


def _set_price(store: InMemoryAlertStore, price: float, *, product_id: str = "prod-1") -> None:
    store.record_catalog_state(
        product_id=product_id,
        variant_id=None,
        product_name="Trail Runner",
        product_slug="trail-runner",
        price=price,
        stock=None,
        now=NOW,
    )


def _price_trigger(
    store: InMemoryAlertStore,
    contacts: InMemoryContactDirectory | None = None,
) -> AlertTrigger:
    return AlertTrigger(
        store,
        contacts or InMemoryContactDirectory(),
        LINKS,
        subject_type="price",
        scope=ClaimScope(product_id="prod-1"),
    )


def _make_coordinator(
    store: InMemoryAlertStore,
    sender=None,  # type: ignore[no-untyped-def]
    *,
    executor: ThreadPoolExecutor | None = None,
    retry_policy: RetryPolicy | None = None,
) -> DispatchCoordinator:
    return DispatchCoordinator(
        store=store,
        sender=sender or StubNotifierSender(enabled=True),
        executor=executor or ThreadPoolExecutor(max_workers=4),
        clock=lambda: NOW,
        retry_policy=retry_policy or RetryPolicy(sleep=lambda _: None),
    )


def test_dispatch_sends_rendered_price_drop_and_records_run() -> None:
    store = InMemoryAlertStore()
    sender = StubNotifierSender(enabled=True)
    alert_id = _create_alert(store)
    _set_price(store, 45.0)

    run = _make_coordinator(store, sender).dispatch(_price_trigger(store), [alert_id, alert_id])

    assert run.counts.evaluated == 1
    assert run.counts.claimed == 1
    assert run.counts.sent == 1
    assert run.status == "completed"
    assert store.get_latest_dispatch_run("price") == run

    [delivery] = sender.deliveries
    alert = store.get_alert(alert_id)
    assert alert is not None and alert.notified_at == NOW
    assert delivery.template_id == "price-drop"
    assert delivery.idempotency_key == f"alert:{alert_id}"
    assert delivery.template_data["price"] == "45.00"
    assert delivery.template_data["threshold"] == "50.00"
    assert delivery.template_data["product_url"] == "https://shop.example.test/product/trail-runner"
    assert delivery.template_data["unsubscribe_url"] == f"https://shop.example.test/unsubscribe/{alert.unsub_token}"


def test_transport_failure_is_counted_and_claim_is_not_reverted() -> None:
    store = InMemoryAlertStore()
    failing = _create_alert(store, email="fail@example.com")
    ok = _create_alert(store)
    _set_price(store, 40.0)

    run = _make_coordinator(store).dispatch(_price_trigger(store), [failing, ok])
    rerun = _make_coordinator(store).dispatch(_price_trigger(store), [failing, ok])

    assert run.counts.claimed == 2
    assert run.counts.sent == 1
    assert run.counts.failed_transport == 1
    assert store.get_alert(failing).notified_at == NOW  # type: ignore[union-attr]
    assert rerun.counts.sent == 0
    assert rerun.counts.skipped_raced == 2


def test_sender_exception_is_absorbed_as_transport_failure() -> None:
    store = InMemoryAlertStore()
    alert_id = _create_alert(store)
    _set_price(store, 40.0)

    run = _make_coordinator(store, _RaisingSender()).dispatch(_price_trigger(store), [alert_id])

    assert run.counts.failed_transport == 1
    assert run.counts.sent == 0
    assert store.get_alert(alert_id).notified_at is not None  # type: ignore[union-attr]


def test_undeliverable_candidates_are_skipped_before_claim() -> None:
    store = InMemoryAlertStore()
    contacts = InMemoryContactDirectory()
    contacts.register("user-with-email", email="member@example.com")
    unknown_user = _create_alert(store, email=None, user_id="user-missing")
    known_user = _create_alert(store, email=None, user_id="user-with-email")
    _set_price(store, 30.0)
    sender = StubNotifierSender(enabled=True)

    run = _make_coordinator(store, sender).dispatch(_price_trigger(store, contacts), [unknown_user, known_user])

    assert run.counts.failed_validation == 1
    assert run.counts.sent == 1
    assert store.get_alert(unknown_user).pending  # type: ignore[union-attr]
    assert [item.destination for item in sender.deliveries] == ["member@example.com"]


def test_stale_and_deleted_candidates_are_skipped() -> None:
    store = InMemoryAlertStore()
    stale = _create_alert(store, threshold=50.0)
    deleted = _create_alert(store, threshold=50.0)
    _set_price(store, 55.0)
    store.delete_alert(deleted)

    run = _make_coordinator(store).dispatch(_price_trigger(store), [stale, deleted])

    assert run.counts.skipped_stale == 1
    assert run.counts.skipped_raced == 1
    assert run.counts.claimed == 0


def test_claim_retries_transient_storage_errors_with_backoff() -> None:
    store = _FlakyClaimStore(failures=2)
    alert_id = _create_alert(store)
    _set_price(store, 45.0)
    delays: list[float] = []
    policy = RetryPolicy(attempts=3, base_delay_seconds=0.1, sleep=delays.append)

    run = _make_coordinator(store, retry_policy=policy).dispatch(_price_trigger(store), [alert_id])

    assert run.counts.sent == 1
    assert store.claim_calls == 3
    assert delays == [0.1, 0.2]


def test_claim_gives_up_after_retry_budget_and_leaves_row_pending() -> None:
    store = _FlakyClaimStore(failures=10)
    alert_id = _create_alert(store)
    _set_price(store, 45.0)
    sender = StubNotifierSender(enabled=True)

    run = _make_coordinator(store, sender, retry_policy=RetryPolicy(attempts=2, sleep=lambda _: None)).dispatch(
        _price_trigger(store), [alert_id]
    )

    assert run.counts.failed_storage == 1
    assert sender.deliveries == []
    assert store.get_alert(alert_id).pending  # type: ignore[union-attr]


def test_retry_policy_delay_is_capped() -> None:
    policy = RetryPolicy(base_delay_seconds=0.5, max_delay_seconds=1.5)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3, 4)] == [0.5, 1.0, 1.5, 1.5]


def test_cancelled_batch_leaves_unclaimed_candidates_pending() -> None:
    store = InMemoryAlertStore()
    alert_ids = [_create_alert(store) for _ in range(3)]
    _set_price(store, 45.0)
    cancel = threading.Event()
    cancel.set()

    run = _make_coordinator(store).dispatch(_price_trigger(store), alert_ids, cancel_event=cancel)

    assert run.status == "cancelled"
    assert run.counts.cancelled == 3
    assert all(store.get_alert(alert_id).pending for alert_id in alert_ids)  # type: ignore[union-attr]


def test_concurrent_batches_for_the_same_alerts_send_each_once() -> None:
    store = InMemoryAlertStore()
    alert_ids = [_create_alert(store) for _ in range(10)]
    _set_price(store, 45.0)
    sender = StubNotifierSender(enabled=True)
    coordinator = _make_coordinator(store, sender, executor=ThreadPoolExecutor(max_workers=8))
    barrier = threading.Barrier(4)

    def _run_batch(_: int):  # type: ignore[no-untyped-def]
        barrier.wait()
        return coordinator.dispatch(_price_trigger(store), alert_ids)

    with ThreadPoolExecutor(max_workers=4) as outer:
        runs = list(outer.map(_run_batch, range(4)))

    assert sum(run.counts.sent for run in runs) == 10
    assert sum(run.counts.skipped_raced for run in runs) == 30
    assert sorted(item.idempotency_key for item in sender.deliveries) == sorted(f"alert:{i}" for i in alert_ids)


def test_review_trigger_sends_review_request() -> None:
    store = InMemoryAlertStore()
    store.upsert_review_job(
        "order-7",
        delivered_at=NOW - timedelta(days=4),
        email="buyer@example.com",
        customer_name="Ada",
        now=NOW,
    )
    store.upsert_review_job(
        "order-8",
        delivered_at=NOW - timedelta(days=4),
        email=None,
        customer_name=None,
        now=NOW,
    )
    sender = StubNotifierSender(enabled=True)
    trigger = ReviewRequestTrigger(store, LINKS, cutoff=NOW - timedelta(days=3))

    run = _make_coordinator(store, sender).dispatch(trigger, ["order-7", "order-8"])

    assert run.trigger_kind == "review_request"
    assert run.counts.sent == 1
    assert run.counts.failed_validation == 1
    [delivery] = sender.deliveries
    assert delivery.template_id == "review-request"
    assert delivery.template_data["review_url"] == "https://shop.example.test/orders/order-7/review"
    assert delivery.template_data["customer_name"] == "Ada"


def test_price_alert_without_threshold_is_a_validation_failure() -> None:
    store = InMemoryAlertStore()
    alert_id = _create_alert(store, threshold=None)
    _set_price(store, 1.0)

    run = _make_coordinator(store).dispatch(_price_trigger(store), [alert_id])

    assert run.counts.failed_validation == 1


@pytest.mark.parametrize("candidates", [[], ["alrt_missing"]])
def test_empty_or_unknown_candidates_produce_a_quiet_run(candidates: list[str]) -> None:
    store = InMemoryAlertStore()

    run = _make_coordinator(store).dispatch(_price_trigger(store), candidates)

    assert run.counts.sent == 0
    assert run.counts.evaluated == len(candidates)


def test_unreadable_candidate_is_counted_and_the_batch_completes() -> None:
    store = _UnreadableAlertStore(unreadable="")
    alert_ids = [_create_alert(store) for _ in range(3)]
    store.unreadable = alert_ids[1]
    _set_price(store, 45.0)
    sender = StubNotifierSender(enabled=True)

    run = _make_coordinator(store, sender).dispatch(_price_trigger(store), alert_ids)

    assert run.status == "completed"
    assert run.finished_at == NOW
    assert run.counts.evaluated == 3
    assert run.counts.sent == 2
    assert run.counts.failed_storage == 1
    assert store.get_latest_dispatch_run("price") == run
    store.unreadable = ""
    assert store.get_alert(alert_ids[1]).pending  # type: ignore[union-attr]
    assert sorted(item.idempotency_key for item in sender.deliveries) == [
        f"alert:{alert_ids[0]}",
        f"alert:{alert_ids[2]}",
    ]


def test_contact_lookup_error_is_a_validation_failure_and_leaves_row_pending() -> None:
    store = InMemoryAlertStore()
    member = _create_alert(store, email=None, user_id="user-1")
    guest = _create_alert(store)
    _set_price(store, 45.0)

    run = _make_coordinator(store).dispatch(_price_trigger(store, _BrokenContactDirectory()), [member, guest])

    assert run.counts.failed_validation == 1
    assert run.counts.sent == 1
    assert store.get_alert(member).pending  # type: ignore[union-attr]


def test_render_error_after_claim_counts_as_transport_failure() -> None:
    store = InMemoryAlertStore()
    alert_id = _create_alert(store)
    _set_price(store, 45.0)
    sender = StubNotifierSender(enabled=True)
    trigger = _BrokenRenderTrigger(
        store,
        InMemoryContactDirectory(),
        LINKS,
        subject_type="price",
        scope=ClaimScope(product_id="prod-1"),
    )

    run = _make_coordinator(store, sender).dispatch(trigger, [alert_id])

    assert run.counts.claimed == 1
    assert run.counts.failed_transport == 1
    assert sender.deliveries == []
    assert store.get_alert(alert_id).notified_at == NOW  # type: ignore[union-attr]


def test_render_rejects_a_claim_without_the_matching_record() -> None:
    store = InMemoryAlertStore()
    prepared = PreparedCandidate(candidate_id="order-1", destination="buyer@example.com")

    with pytest.raises(TypeError):
        _price_trigger(store).render(ClaimResult(outcome="claimed"), prepared)
    with pytest.raises(TypeError):
        ReviewRequestTrigger(store, LINKS, cutoff=NOW).render(ClaimResult(outcome="claimed"), prepared)
