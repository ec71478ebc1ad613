from __future__ import annotations

import logging
import time
from collections import Counter
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from threading import Event
from typing import Callable, Literal, Protocol, Sequence, TypeVar

from .contacts import ContactDirectory
from .models import AlertSubject, TriggerKind
from .notifier import NotificationRequest, NotifierSender, mask_destination
from .store import (
    AlertRecord,
    AlertStore,
    ClaimResult,
    ClaimScope,
    DispatchCounts,
    DispatchRunRecord,
    ReviewJobRecord,
    TransientStoreError,
    _now_utc,
)
from .templates import StorefrontLinks, render_alert_notification, render_review_request

logger = logging.getLogger(__name__)

T = TypeVar("T")

CandidateOutcome = Literal[
    "sent",
    "failed_transport",
    "failed_validation",
    "failed_storage",
    "skipped_raced",
    "skipped_stale",
    "cancelled",
]


class CandidateValidationError(ValueError):
    """Raised when a candidate cannot be delivered (no contact, missing threshold)."""


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient storage failures around a claim.

    Retrying is safe because the claim is a compare-and-set: a retry after a
    commit that was not acknowledged reports ``already_claimed`` and sends nothing.
    Notifier calls are never retried here.
    """

    attempts: int = 3
    base_delay_seconds: float = 0.05
    max_delay_seconds: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay_seconds * (2 ** max(0, attempt - 1)), self.max_delay_seconds)

    def run(self, operation: Callable[[], T]) -> T:
        attempt = 1
        while True:
            try:
                return operation()
            except TransientStoreError:
                if attempt >= self.attempts:
                    raise
                self.sleep(self.delay_for(attempt))
                attempt += 1


@dataclass(frozen=True)
class PreparedCandidate:
    candidate_id: str
    destination: str


class ClaimableTrigger(Protocol):
    """One kind of fire-once notification: how to recheck and claim it, and what to send."""

    kind: TriggerKind

    def prepare(self, candidate_id: str) -> PreparedCandidate | None: ...

    def claim(self, candidate_id: str, *, now: datetime) -> ClaimResult: ...

    def render(self, result: ClaimResult, prepared: PreparedCandidate) -> NotificationRequest: ...


class AlertTrigger:
    def __init__(
        self,
        store: AlertStore,
        contacts: ContactDirectory,
        links: StorefrontLinks,
        *,
        subject_type: AlertSubject,
        scope: ClaimScope,
    ) -> None:
        self._store = store
        self._contacts = contacts
        self._links = links
        self._subject_type = subject_type
        self._scope = scope
        self.kind: TriggerKind = subject_type

    def _destination(self, alert: AlertRecord) -> str | None:
        if alert.user_id is not None:
            contact = self._contacts.lookup(alert.user_id)
            if contact is None:
                return None
            return contact.email if alert.channel == "email" else contact.phone
        return alert.email if alert.channel == "email" else alert.phone

    def prepare(self, candidate_id: str) -> PreparedCandidate | None:
        alert = self._store.get_alert(candidate_id)
        if alert is None:
            return None
        if alert.subject_type == "price" and alert.threshold is None:
            raise CandidateValidationError(f"price alert {candidate_id} has no threshold")
        destination = (self._destination(alert) or "").strip()
        if not destination:
            raise CandidateValidationError(f"alert {candidate_id} has no deliverable {alert.channel} contact")
        return PreparedCandidate(candidate_id=candidate_id, destination=destination)

    def claim(self, candidate_id: str, *, now: datetime) -> ClaimResult:
        return self._store.claim_alert(
            candidate_id,
            subject_type=self._subject_type,
            scope=self._scope,
            now=now,
        )

    def render(self, result: ClaimResult, prepared: PreparedCandidate) -> NotificationRequest:
        if not isinstance(result.record, AlertRecord):
            raise TypeError(f"claim for alert {prepared.candidate_id} returned no alert record")
        return render_alert_notification(
            result.record,
            result.state,
            destination=prepared.destination,
            links=self._links,
        )


class ReviewRequestTrigger:
    kind: TriggerKind = "review_request"

    def __init__(self, store: AlertStore, links: StorefrontLinks, *, cutoff: datetime) -> None:
        self._store = store
        self._links = links
        self._cutoff = cutoff

    def prepare(self, candidate_id: str) -> PreparedCandidate | None:
        job = self._store.get_review_job(candidate_id)
        if job is None:
            return None
        destination = (job.email or "").strip()
        if not destination:
            raise CandidateValidationError(f"order {candidate_id} has no email for a review request")
        return PreparedCandidate(candidate_id=candidate_id, destination=destination)

    def claim(self, candidate_id: str, *, now: datetime) -> ClaimResult:
        return self._store.claim_review_job(candidate_id, cutoff=self._cutoff, now=now)

    def render(self, result: ClaimResult, prepared: PreparedCandidate) -> NotificationRequest:
        if not isinstance(result.record, ReviewJobRecord):
            raise TypeError(f"claim for order {prepared.candidate_id} returned no review job")
        return render_review_request(result.record, destination=prepared.destination, links=self._links)


class DispatchCoordinator:
    """Claims each candidate, then notifies; a committed claim is never reverted.

    Candidates are independent and run on the injected executor, which also
    bounds the number of concurrent notifier calls.
    """

    def __init__(
        self,
        *,
        store: AlertStore,
        sender: NotifierSender,
        executor: Executor,
        clock: Callable[[], datetime] = _now_utc,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._sender = sender
        self._executor = executor
        self._clock = clock
        self._retry_policy = retry_policy or RetryPolicy()

    def dispatch(
        self,
        trigger: ClaimableTrigger,
        candidate_ids: Sequence[str],
        *,
        cancel_event: Event | None = None,
    ) -> DispatchRunRecord:
        started_at = self._clock()
        run_id = self._store.create_dispatch_run(trigger_kind=trigger.kind, started_at=started_at)
        unique_ids = list(dict.fromkeys(candidate_ids))

        futures = [
            self._executor.submit(self._process_candidate, trigger, candidate_id, cancel_event)
            for candidate_id in unique_ids
        ]
        tally: Counter[str] = Counter(future.result() for future in futures)

        counts = DispatchCounts(
            evaluated=len(unique_ids),
            claimed=tally["sent"] + tally["failed_transport"],
            sent=tally["sent"],
            skipped_raced=tally["skipped_raced"],
            skipped_stale=tally["skipped_stale"],
            failed_transport=tally["failed_transport"],
            failed_validation=tally["failed_validation"],
            failed_storage=tally["failed_storage"],
            cancelled=tally["cancelled"],
        )
        record = self._store.finalize_dispatch_run(
            run_id,
            status="cancelled" if counts.cancelled else "completed",
            counts=counts,
            finished_at=self._clock(),
        )
        logger.info(
            "dispatch run %s (%s): evaluated=%d claimed=%d sent=%d raced=%d stale=%d "
            "transport_failed=%d invalid=%d storage_failed=%d cancelled=%d",
            run_id,
            trigger.kind,
            counts.evaluated,
            counts.claimed,
            counts.sent,
            counts.skipped_raced,
            counts.skipped_stale,
            counts.failed_transport,
            counts.failed_validation,
            counts.failed_storage,
            counts.cancelled,
        )
        return record

    def _process_candidate(
        self,
        trigger: ClaimableTrigger,
        candidate_id: str,
        cancel_event: Event | None,
    ) -> CandidateOutcome:
        if cancel_event is not None and cancel_event.is_set():
            return "cancelled"

        # Nothing is claimed yet, so every failure here leaves the row pending.
        try:
            prepared = trigger.prepare(candidate_id)
        except CandidateValidationError as exc:
            logger.warning("skipping %s candidate %s: %s", trigger.kind, candidate_id, exc)
            return "failed_validation"
        except TransientStoreError:
            logger.exception("loading %s candidate %s failed", trigger.kind, candidate_id)
            return "failed_storage"
        except Exception:  # noqa: BLE001
            logger.exception("preparing %s candidate %s failed", trigger.kind, candidate_id)
            return "failed_validation"
        if prepared is None:
            return "skipped_raced"

        try:
            result = self._retry_policy.run(lambda: trigger.claim(candidate_id, now=self._clock()))
        except Exception:  # noqa: BLE001
            logger.exception("claim for %s candidate %s failed", trigger.kind, candidate_id)
            return "failed_storage"

        if result.outcome in {"already_claimed", "not_found"}:
            logger.debug("%s candidate %s already claimed elsewhere", trigger.kind, candidate_id)
            return "skipped_raced"
        if result.outcome == "condition_no_longer_met":
            logger.debug("%s candidate %s no longer meets its condition", trigger.kind, candidate_id)
            return "skipped_stale"

        # The claim is committed from here on and is never reverted.
        try:
            request = trigger.render(result, prepared)
        except Exception:  # noqa: BLE001
            logger.exception("rendering %s candidate %s failed after claim", trigger.kind, candidate_id)
            return "failed_transport"
        masked = mask_destination(request.destination, request.channel)
        try:
            response = self._sender.send(request)
        except Exception:  # noqa: BLE001
            logger.exception("notifier raised for %s candidate %s (%s)", trigger.kind, candidate_id, masked)
            return "failed_transport"
        if response.status != "sent":
            logger.warning(
                "notifier failed for %s candidate %s (%s): %s %s",
                trigger.kind,
                candidate_id,
                masked,
                response.error_code,
                response.error_message,
            )
            return "failed_transport"
        logger.info("sent %s notification for %s to %s", trigger.kind, candidate_id, masked)
        return "sent"
