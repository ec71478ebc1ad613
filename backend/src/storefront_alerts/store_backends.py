from __future__ import annotations

import secrets
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from sqlalchemy import DateTime, Float, Integer, String, create_engine, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .models import AlertSubject, ContactChannel, DispatchRunStatus, TriggerKind
from .store import (
    AlertRecord,
    AlertStore,
    CatalogState,
    ClaimResult,
    ClaimScope,
    DispatchCounts,
    DispatchRunRecord,
    DuplicateTokenError,
    InMemoryAlertStore,
    ReviewJobRecord,
    TransientStoreError,
    _coerce_utc,
    _now_utc,
)

# catalog_states is keyed on (product_id, variant_key); product-level state uses the empty key.
_PRODUCT_LEVEL_KEY = ""


def _variant_key(variant_id: str | None) -> str:
    return variant_id if variant_id is not None else _PRODUCT_LEVEL_KEY


class AlertsBase(DeclarativeBase):
    pass


class _AlertRow(AlertsBase):
    __tablename__ = "alerts"

    alert_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject_type: Mapped[str] = mapped_column(String(16), nullable=False)
    product_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    variant_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    unsub_token: Mapped[str] = mapped_column(String(128), nullable=False)
    unsub_token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _CatalogStateRow(AlertsBase):
    __tablename__ = "catalog_states"

    product_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    variant_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    product_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    product_slug: Mapped[str | None] = mapped_column(String(256), nullable=True)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ReviewJobRow(AlertsBase):
    __tablename__ = "review_jobs"

    order_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    delivered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    review_request_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DispatchRunRow(AlertsBase):
    __tablename__ = "dispatch_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    trigger_kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    evaluated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_raced_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_stale_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_transport_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_validation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_storage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancelled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _to_alert_record(row: _AlertRow) -> AlertRecord:
    return AlertRecord(
        alert_id=row.alert_id,
        subject_type=row.subject_type,  # type: ignore[arg-type]
        product_id=row.product_id,
        variant_id=row.variant_id,
        channel=row.channel,  # type: ignore[arg-type]
        user_id=row.user_id,
        email=row.email,
        phone=row.phone,
        threshold=row.threshold,
        unsub_token=row.unsub_token,
        unsub_token_hash=row.unsub_token_hash,
        notified_at=_coerce_utc(row.notified_at) if row.notified_at is not None else None,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _to_catalog_state(row: _CatalogStateRow) -> CatalogState:
    return CatalogState(
        product_id=row.product_id,
        variant_id=row.variant_key or None,
        product_name=row.product_name,
        product_slug=row.product_slug,
        price=row.price,
        stock=row.stock,
        updated_at=_coerce_utc(row.updated_at),
    )


def _to_review_job(row: _ReviewJobRow) -> ReviewJobRecord:
    return ReviewJobRecord(
        order_id=row.order_id,
        email=row.email,
        customer_name=row.customer_name,
        delivered_at=_coerce_utc(row.delivered_at),
        review_request_sent_at=(
            _coerce_utc(row.review_request_sent_at) if row.review_request_sent_at is not None else None
        ),
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _to_dispatch_run(row: _DispatchRunRow) -> DispatchRunRecord:
    return DispatchRunRecord(
        run_id=row.run_id,
        trigger_kind=row.trigger_kind,  # type: ignore[arg-type]
        status=row.status,  # type: ignore[arg-type]
        counts=DispatchCounts(
            evaluated=row.evaluated_count,
            claimed=row.claimed_count,
            sent=row.sent_count,
            skipped_raced=row.skipped_raced_count,
            skipped_stale=row.skipped_stale_count,
            failed_transport=row.failed_transport_count,
            failed_validation=row.failed_validation_count,
            failed_storage=row.failed_storage_count,
            cancelled=row.cancelled_count,
        ),
        started_at=_coerce_utc(row.started_at),
        finished_at=_coerce_utc(row.finished_at) if row.finished_at is not None else None,
    )


class SqlAlchemyAlertStore:
    """Alert store backed by a relational database.

    Claims are single conditional UPDATE statements: the row is stamped only when
    its timestamp is still NULL and the catalog condition holds in the same
    statement, so two racing claimers can never both observe success.
    """

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for ALERT_STORE_BACKEND=postgres")
        is_sqlite = database_url.startswith("sqlite")
        # Dispatch workers share the pool across threads; SQLite serializes writers itself.
        connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if is_sqlite:
            AlertsBase.metadata.create_all(self._engine)

    def _session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._session() as session:
                with session.begin():
                    yield session
        except OperationalError as exc:
            raise TransientStoreError(f"alert store unavailable: {exc.orig}") from exc

    def reset(self) -> None:
        with self._transaction() as session:
            session.execute(delete(_DispatchRunRow))
            session.execute(delete(_ReviewJobRow))
            session.execute(delete(_CatalogStateRow))
            session.execute(delete(_AlertRow))

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
        now = _now_utc()
        row = _AlertRow(
            alert_id=f"alrt_{secrets.token_hex(8)}",
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
        try:
            with self._transaction() as session:
                session.add(row)
        except IntegrityError as exc:
            raise DuplicateTokenError("unsubscribe token already issued") from exc
        return _to_alert_record(row)

    def get_alert(self, alert_id: str) -> AlertRecord | None:
        with self._transaction() as session:
            row = session.get(_AlertRow, alert_id)
            return _to_alert_record(row) if row is not None else None

    def list_alerts_for_product(self, product_id: str) -> list[AlertRecord]:
        with self._transaction() as session:
            rows = session.execute(
                select(_AlertRow)
                .where(_AlertRow.product_id == product_id)
                .order_by(_AlertRow.created_at.asc(), _AlertRow.alert_id.asc())
            ).scalars()
            return [_to_alert_record(row) for row in rows]

    def find_alert_by_token_hash(self, unsub_token_hash: str) -> AlertRecord | None:
        with self._transaction() as session:
            row = session.execute(
                select(_AlertRow).where(_AlertRow.unsub_token_hash == unsub_token_hash)
            ).scalar_one_or_none()
            return _to_alert_record(row) if row is not None else None

    def delete_alert(self, alert_id: str) -> bool:
        with self._transaction() as session:
            result = session.execute(delete(_AlertRow).where(_AlertRow.alert_id == alert_id))
            return result.rowcount == 1

    def select_pending_alerts(
        self,
        *,
        subject_type: AlertSubject,
        product_id: str,
        variant_id: str | None,
    ) -> list[AlertRecord]:
        if variant_id is None:
            variant_clause = _AlertRow.variant_id.is_(None)
        else:
            variant_clause = or_(_AlertRow.variant_id.is_(None), _AlertRow.variant_id == variant_id)
        with self._transaction() as session:
            rows = session.execute(
                select(_AlertRow)
                .where(_AlertRow.notified_at.is_(None))
                .where(_AlertRow.subject_type == subject_type)
                .where(_AlertRow.product_id == product_id)
                .where(variant_clause)
                .order_by(_AlertRow.alert_id.asc())
            ).scalars()
            return [_to_alert_record(row) for row in rows]

    def claim_alert(
        self,
        alert_id: str,
        *,
        subject_type: AlertSubject,
        scope: ClaimScope,
        now: datetime,
    ) -> ClaimResult:
        claimed_at = _coerce_utc(now)
        state_key = (scope.product_id, _variant_key(scope.variant_id))
        condition = select(_CatalogStateRow.product_id).where(
            _CatalogStateRow.product_id == scope.product_id,
            _CatalogStateRow.variant_key == state_key[1],
        )
        if subject_type == "price":
            condition = condition.where(
                _CatalogStateRow.price.is_not(None),
                _AlertRow.threshold.is_not(None),
                _CatalogStateRow.price <= _AlertRow.threshold,
            )
        else:
            condition = condition.where(_CatalogStateRow.stock > 0)
        statement = (
            update(_AlertRow)
            .where(_AlertRow.alert_id == alert_id)
            .where(_AlertRow.notified_at.is_(None))
            .where(_AlertRow.subject_type == subject_type)
            .where(condition.correlate(_AlertRow).exists())
            .values(notified_at=claimed_at, updated_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            result = session.execute(statement)
            row = session.get(_AlertRow, alert_id)
            state_row = session.get(_CatalogStateRow, state_key)
            state = _to_catalog_state(state_row) if state_row is not None else None
            if result.rowcount == 1 and row is not None:
                return ClaimResult(outcome="claimed", record=_to_alert_record(row), state=state)
            if row is None:
                return ClaimResult(outcome="not_found")
            if row.notified_at is not None:
                return ClaimResult(outcome="already_claimed", record=_to_alert_record(row))
            return ClaimResult(outcome="condition_no_longer_met", record=_to_alert_record(row), state=state)

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
        key = (product_id, _variant_key(variant_id))
        updated_at = _coerce_utc(now)
        # A concurrent first write for the same key loses the insert race once, then updates.
        for attempt in range(2):
            try:
                with self._transaction() as session:
                    row = session.get(_CatalogStateRow, key, with_for_update=True)
                    if row is None:
                        session.add(
                            _CatalogStateRow(
                                product_id=product_id,
                                variant_key=key[1],
                                product_name=product_name,
                                product_slug=product_slug,
                                price=price,
                                stock=stock,
                                updated_at=updated_at,
                            )
                        )
                        return None
                    previous = _to_catalog_state(row)
                    if product_name is not None:
                        row.product_name = product_name
                    if product_slug is not None:
                        row.product_slug = product_slug
                    if price is not None:
                        row.price = price
                    if stock is not None:
                        row.stock = stock
                    row.updated_at = updated_at
                    return previous
            except IntegrityError:
                if attempt == 1:
                    raise
        return None

    def get_catalog_state(self, product_id: str, variant_id: str | None) -> CatalogState | None:
        with self._transaction() as session:
            row = session.get(_CatalogStateRow, (product_id, _variant_key(variant_id)))
            return _to_catalog_state(row) if row is not None else None

    def upsert_review_job(
        self,
        order_id: str,
        *,
        delivered_at: datetime,
        email: str | None,
        customer_name: str | None,
        now: datetime,
    ) -> ReviewJobRecord:
        with self._transaction() as session:
            row = session.get(_ReviewJobRow, order_id)
            if row is None:
                row = _ReviewJobRow(
                    order_id=order_id,
                    email=email,
                    customer_name=customer_name,
                    delivered_at=_coerce_utc(delivered_at),
                    review_request_sent_at=None,
                    created_at=_coerce_utc(now),
                    updated_at=_coerce_utc(now),
                )
                session.add(row)
            elif row.review_request_sent_at is None:
                if email is not None:
                    row.email = email
                if customer_name is not None:
                    row.customer_name = customer_name
                row.delivered_at = _coerce_utc(delivered_at)
                row.updated_at = _coerce_utc(now)
            session.flush()
            return _to_review_job(row)

    def get_review_job(self, order_id: str) -> ReviewJobRecord | None:
        with self._transaction() as session:
            row = session.get(_ReviewJobRow, order_id)
            return _to_review_job(row) if row is not None else None

    def select_due_review_jobs(self, *, cutoff: datetime, limit: int | None = None) -> list[str]:
        query = (
            select(_ReviewJobRow.order_id)
            .where(_ReviewJobRow.review_request_sent_at.is_(None))
            .where(_ReviewJobRow.delivered_at <= _coerce_utc(cutoff))
            .order_by(_ReviewJobRow.delivered_at.asc(), _ReviewJobRow.order_id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        with self._transaction() as session:
            return list(session.execute(query).scalars())

    def claim_review_job(self, order_id: str, *, cutoff: datetime, now: datetime) -> ClaimResult:
        claimed_at = _coerce_utc(now)
        statement = (
            update(_ReviewJobRow)
            .where(_ReviewJobRow.order_id == order_id)
            .where(_ReviewJobRow.review_request_sent_at.is_(None))
            .where(_ReviewJobRow.delivered_at <= _coerce_utc(cutoff))
            .values(review_request_sent_at=claimed_at, updated_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            result = session.execute(statement)
            row = session.get(_ReviewJobRow, order_id)
            if row is None:
                return ClaimResult(outcome="not_found")
            if result.rowcount == 1:
                return ClaimResult(outcome="claimed", record=_to_review_job(row))
            if row.review_request_sent_at is not None:
                return ClaimResult(outcome="already_claimed", record=_to_review_job(row))
            return ClaimResult(outcome="condition_no_longer_met", record=_to_review_job(row))

    def create_dispatch_run(self, *, trigger_kind: TriggerKind, started_at: datetime) -> str:
        run_id = f"drun_{secrets.token_hex(8)}"
        with self._transaction() as session:
            session.add(
                _DispatchRunRow(
                    run_id=run_id,
                    trigger_kind=trigger_kind,
                    status="running",
                    started_at=_coerce_utc(started_at),
                )
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
        with self._transaction() as session:
            row = session.get(_DispatchRunRow, run_id)
            if row is None:
                raise KeyError(run_id)
            row.status = status
            row.evaluated_count = counts.evaluated
            row.claimed_count = counts.claimed
            row.sent_count = counts.sent
            row.skipped_raced_count = counts.skipped_raced
            row.skipped_stale_count = counts.skipped_stale
            row.failed_transport_count = counts.failed_transport
            row.failed_validation_count = counts.failed_validation
            row.failed_storage_count = counts.failed_storage
            row.cancelled_count = counts.cancelled
            row.finished_at = _coerce_utc(finished_at)
            session.flush()
            return _to_dispatch_run(row)

    def get_latest_dispatch_run(self, trigger_kind: TriggerKind | None = None) -> DispatchRunRecord | None:
        query = select(_DispatchRunRow)
        if trigger_kind is not None:
            query = query.where(_DispatchRunRow.trigger_kind == trigger_kind)
        query = query.order_by(_DispatchRunRow.started_at.desc(), _DispatchRunRow.run_id.desc()).limit(1)
        with self._transaction() as session:
            row = session.execute(query).scalar_one_or_none()
            return _to_dispatch_run(row) if row is not None else None


def create_alert_store(*, backend: str, database_url: str) -> AlertStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyAlertStore(database_url)
    if normalized == "inmemory":
        return InMemoryAlertStore()
    raise RuntimeError(f"unsupported ALERT_STORE_BACKEND: {backend}")
