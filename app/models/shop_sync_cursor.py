"""
 * @file: shop_sync_cursor.py
 * @description: Курсор (водяной знак) инкрементальной синхронизации по магазину и ключу
 * @dependencies: SQLModel, datetime
 * @created: 2026-01-02
"""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import SQLModel, Field


class ShopSyncCursor(SQLModel, table=True):
    """
    Последнее успешно обработанное значение (обычно ISO-8601 время) для пары (магазин, ключ).
    """
    __tablename__ = "shop_sync_cursors"
    __table_args__ = (UniqueConstraint("shop_id", "key", name="uq_shop_sync_cursor"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    key: str = Field(description="Ключ курсора, например orders.change_time")
    cursor: Optional[str] = Field(default=None)
    meta: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
