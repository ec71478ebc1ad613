from __future__ import annotations

from dataclasses import dataclass

from .store import AlertStore


@dataclass(frozen=True)
class CatalogChange:
    product_id: str
    variant_id: str | None = None
    new_price: float | None = None
    new_stock: int | None = None
    previous_stock: int | None = None


@dataclass(frozen=True)
class EvaluationResult:
    price_alert_ids: list[str]
    stock_alert_ids: list[str]

    @property
    def total(self) -> int:
        return len(self.price_alert_ids) + len(self.stock_alert_ids)


def is_restock(new_stock: int | None, previous_stock: int | None) -> bool:
    """Only the transition from no stock to some stock counts as a restock.

    An unknown previous level is treated as out of stock.
    """
    if new_stock is None or new_stock <= 0:
        return False
    return (previous_stock or 0) <= 0


class ThresholdEvaluator:
    def __init__(self, store: AlertStore) -> None:
        self._store = store

    def evaluate(self, change: CatalogChange) -> EvaluationResult:
        price_ids: list[str] = []
        stock_ids: list[str] = []

        if change.new_price is not None:
            candidates = self._store.select_pending_alerts(
                subject_type="price",
                product_id=change.product_id,
                variant_id=change.variant_id,
            )
            price_ids = [
                alert.alert_id
                for alert in candidates
                if alert.threshold is not None and change.new_price <= alert.threshold
            ]

        if is_restock(change.new_stock, change.previous_stock):
            candidates = self._store.select_pending_alerts(
                subject_type="stock",
                product_id=change.product_id,
                variant_id=change.variant_id,
            )
            stock_ids = [alert.alert_id for alert in candidates]

        return EvaluationResult(price_alert_ids=price_ids, stock_alert_ids=stock_ids)
