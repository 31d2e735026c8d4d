"""
 * @file: snapshot_records.py
 * @description: Записи, импортированные из снапшотов (товары, заказы, клиенты), и метрики вариантов
 * @dependencies: SQLModel, datetime
 * @created: 2026-01-02
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import SQLModel, Field


class ProductRecord(SQLModel, table=True):
    __tablename__ = "snapshot_products"
    __table_args__ = (UniqueConstraint("shop_id", "guid", name="uq_snapshot_product"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    guid: str = Field(index=True)
    name: Optional[str] = Field(default=None)
    variant_codes: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    change_time: Optional[str] = Field(default=None)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class OrderRecord(SQLModel, table=True):
    __tablename__ = "snapshot_orders"
    __table_args__ = (UniqueConstraint("shop_id", "code", name="uq_snapshot_order"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    code: str = Field(index=True)
    guid: Optional[str] = Field(default=None)
    status: Optional[str] = Field(default=None, index=True)
    customer_guid: Optional[str] = Field(default=None, index=True)
    change_time: Optional[str] = Field(default=None)
    items: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CustomerRecord(SQLModel, table=True):
    __tablename__ = "snapshot_customers"
    __table_args__ = (UniqueConstraint("shop_id", "guid", name="uq_snapshot_customer"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    guid: str = Field(index=True)
    email: Optional[str] = Field(default=None, index=True)
    change_time: Optional[str] = Field(default=None)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class VariantMetric(SQLModel, table=True):
    """Агрегаты продаж варианта, пересчитываются асинхронно после импорта заказов."""
    __tablename__ = "variant_metrics"

    variant_code: str = Field(primary_key=True)
    orders_count: int = Field(default=0)
    quantity_sold: float = Field(default=0)
    last_order_at: Optional[str] = Field(default=None)
    recalculated_at: datetime = Field(default_factory=datetime.utcnow)
