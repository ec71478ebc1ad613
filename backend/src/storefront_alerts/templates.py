from __future__ import annotations

from dataclasses import dataclass

from .notifier import NotificationRequest
from .store import AlertRecord, CatalogState, ReviewJobRecord

PRICE_DROP_TEMPLATE = "price-drop"
STOCK_BACK_TEMPLATE = "stock-back"
REVIEW_REQUEST_TEMPLATE = "review-request"


def _format_price(value: float | None) -> str:
    return f"{value:.2f}" if value is not None else ""


@dataclass(frozen=True)
class StorefrontLinks:
    web_url: str

    def _base(self) -> str:
        return self.web_url.rstrip("/")

    def product_url(self, product_id: str, slug: str | None) -> str:
        return f"{self._base()}/product/{slug or product_id}"

    def unsubscribe_url(self, unsub_token: str) -> str:
        return f"{self._base()}/unsubscribe/{unsub_token}"

    def review_url(self, order_id: str) -> str:
        return f"{self._base()}/orders/{order_id}/review"


def render_alert_notification(
    alert: AlertRecord,
    state: CatalogState | None,
    *,
    destination: str,
    links: StorefrontLinks,
) -> NotificationRequest:
    product_name = (state.product_name if state else None) or alert.product_id
    data = {
        "product_name": product_name,
        "price": _format_price(state.price if state else None),
        "product_url": links.product_url(alert.product_id, state.product_slug if state else None),
        "unsubscribe_url": links.unsubscribe_url(alert.unsub_token),
    }
    if alert.subject_type == "price":
        template_id = PRICE_DROP_TEMPLATE
        data["threshold"] = _format_price(alert.threshold)
        data["subject"] = f"{product_name} dropped to {data['price']}"
    else:
        template_id = STOCK_BACK_TEMPLATE
        data["subject"] = f"{product_name} is back in stock"
    return NotificationRequest(
        channel=alert.channel,
        destination=destination,
        template_id=template_id,
        template_data=data,
        idempotency_key=f"alert:{alert.alert_id}",
    )


def render_review_request(job: ReviewJobRecord, *, destination: str, links: StorefrontLinks) -> NotificationRequest:
    return NotificationRequest(
        channel="email",
        destination=destination,
        template_id=REVIEW_REQUEST_TEMPLATE,
        template_data={
            "order_id": job.order_id,
            "customer_name": job.customer_name or "there",
            "review_url": links.review_url(job.order_id),
            "subject": "How was your order?",
        },
        idempotency_key=f"review-request:{job.order_id}",
    )
