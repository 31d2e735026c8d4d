"""
 * @file: importers.py
 * @description: Идемпотентный импорт записей снапшотов по типу endpoint (товары, заказы, клиенты)
 * @dependencies: ProductRecord, OrderRecord, CustomerRecord, RecordResult
 * @created: 2026-01-02
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from sqlmodel import Session, select

from app.models.shop import Shop
from app.models.snapshot_records import CustomerRecord, OrderRecord, ProductRecord
from app.schemas.snapshot_import import RecordResult, SkipReason
from app.services.shoptet.snapshot_service import CUSTOMERS_ENDPOINT, ORDERS_ENDPOINT, PRODUCTS_ENDPOINT
from app.services.snapshots.exceptions import RecordImportError

logger = logging.getLogger("snapshots.import")

RecordImporter = Callable[[Session, Shop, Dict[str, Any]], RecordResult]


def normalize_endpoint(endpoint: Optional[str]) -> str:
    """Только путь: без хоста и query string."""
    if not endpoint:
        return ""
    return (urlparse(endpoint).path or "").rstrip("/")


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _variant_codes(items: List[Dict[str, Any]]) -> List[str]:
    codes = []
    for item in items:
        if not isinstance(item, dict):
            continue
        code = _text(item.get("itemCode")) or _text(item.get("code"))
        if code:
            codes.append(code)
    return codes


def import_product(session: Session, shop: Shop, record: Dict[str, Any]) -> RecordResult:
    guid = _text(record.get("guid"))
    if not guid:
        return RecordResult.skipped(SkipReason.MISSING_IDENTIFIER)

    product = session.exec(
        select(ProductRecord).where(ProductRecord.shop_id == shop.id, ProductRecord.guid == guid)
    ).first()
    if product is None:
        product = ProductRecord(shop_id=shop.id, guid=guid)

    variants = record.get("variants") or []
    if not isinstance(variants, list):
        raise RecordImportError(f"Товар {guid}: поле variants должно быть списком")

    product.name = _text(record.get("name"))
    product.variant_codes = [code for code in (_text(v.get("code")) for v in variants if isinstance(v, dict)) if code]
    product.change_time = _text(record.get("changeTime"))
    product.data = record
    product.updated_at = datetime.utcnow()
    session.add(product)
    return RecordResult.imported(change_time=product.change_time)


def import_order(session: Session, shop: Shop, record: Dict[str, Any]) -> RecordResult:
    """Заказ по коду. Возвращает коды вариантов позиций для пересчёта метрик."""
    code = _text(record.get("code"))
    if not code:
        return RecordResult.skipped(SkipReason.MISSING_IDENTIFIER)

    items = record.get("items") or []
    if not isinstance(items, list):
        raise RecordImportError(f"Заказ {code}: поле items должно быть списком")

    order = session.exec(
        select(OrderRecord).where(OrderRecord.shop_id == shop.id, OrderRecord.code == code)
    ).first()
    if order is None:
        order = OrderRecord(shop_id=shop.id, code=code)

    status = record.get("status")
    customer = record.get("customer")
    order.guid = _text(record.get("guid"))
    order.status = _text(status.get("name")) if isinstance(status, dict) else _text(status)
    order.customer_guid = _text(customer.get("guid")) if isinstance(customer, dict) else None
    order.change_time = _text(record.get("changeTime")) or _text(record.get("creationTime"))
    order.items = [item for item in items if isinstance(item, dict)]
    order.data = record
    order.updated_at = datetime.utcnow()
    session.add(order)
    return RecordResult.imported(affected_ids=_variant_codes(items), change_time=order.change_time)


def import_customer(session: Session, shop: Shop, record: Dict[str, Any]) -> RecordResult:
    guid = _text(record.get("guid"))
    if not guid:
        return RecordResult.skipped(SkipReason.MISSING_IDENTIFIER)

    customer = session.exec(
        select(CustomerRecord).where(CustomerRecord.shop_id == shop.id, CustomerRecord.guid == guid)
    ).first()
    if customer is None:
        customer = CustomerRecord(shop_id=shop.id, guid=guid)

    contact = record.get("billingAddress") if isinstance(record.get("billingAddress"), dict) else {}
    customer.email = _text(record.get("email")) or _text(contact.get("email"))
    customer.change_time = _text(record.get("changeTime"))
    customer.data = record
    customer.updated_at = datetime.utcnow()
    session.add(customer)
    return RecordResult.imported(change_time=customer.change_time)


IMPORTERS: Dict[str, RecordImporter] = {
    PRODUCTS_ENDPOINT: import_product,
    ORDERS_ENDPOINT: import_order,
    CUSTOMERS_ENDPOINT: import_customer,
}


def resolve_importer(endpoint: Optional[str]) -> Optional[RecordImporter]:
    return IMPORTERS.get(normalize_endpoint(endpoint))
