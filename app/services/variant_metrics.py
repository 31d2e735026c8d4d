"""
 * @file: variant_metrics.py
 * @description: Пересчёт метрик продаж вариантов по импортированным заказам
 * @dependencies: OrderRecord, VariantMetric, SQLModel
 * @created: 2026-01-02
"""
import logging
from datetime import datetime
from typing import Dict, List

from sqlmodel import Session, select

from app.models.snapshot_records import OrderRecord, VariantMetric

logger = logging.getLogger("snapshots.import")


def _quantity(item: dict) -> float:
    try:
        return float(item.get("amount") or item.get("quantity") or 0)
    except (TypeError, ValueError):
        return 0.0


def recalculate_variant_metrics(session: Session, variant_codes: List[str]) -> Dict[str, VariantMetric]:
    """
    Пересчитывает количество заказов и проданных штук по каждому варианту.
    Полный пересчёт по всем заказам, поэтому повторный вызов даёт тот же результат.
    """
    wanted = {code for code in variant_codes if code}
    if not wanted:
        return {}

    totals = {code: {"orders": 0, "quantity": 0.0, "last": None} for code in wanted}
    for order in session.exec(select(OrderRecord)).all():
        seen = set()
        for item in order.items or []:
            code = str(item.get("itemCode") or item.get("code") or "").strip()
            if code not in wanted:
                continue
            totals[code]["quantity"] += _quantity(item)
            if code not in seen:
                seen.add(code)
                totals[code]["orders"] += 1
                last = totals[code]["last"]
                if order.change_time and (last is None or order.change_time > last):
                    totals[code]["last"] = order.change_time

    metrics = {}
    now = datetime.utcnow()
    for code, total in totals.items():
        metric = session.get(VariantMetric, code) or VariantMetric(variant_code=code)
        metric.orders_count = total["orders"]
        metric.quantity_sold = total["quantity"]
        metric.last_order_at = total["last"]
        metric.recalculated_at = now
        session.add(metric)
        metrics[code] = metric
    session.commit()

    logger.info(f"[VariantMetrics] Пересчитано вариантов: {len(metrics)}")
    return metrics
