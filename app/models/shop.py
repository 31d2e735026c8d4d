"""
 * @file: shop.py
 * @description: Модель магазина (тенанта), данные которого синхронизирует конвейер
 * @dependencies: SQLModel, datetime
 * @created: 2026-01-02
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field


class ShopProvider(str, Enum):
    """Платформа, с которой синхронизируется магазин."""
    SHOPTET = "shoptet"
    WOOCOMMERCE = "woocommerce"


class Shop(SQLModel, table=True):
    """
    Магазин на внешней платформе. Создаётся через админку, конвейер только читает его.
    """
    __tablename__ = "shops"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(description="Название магазина")
    provider: ShopProvider = Field(default=ShopProvider.SHOPTET, index=True, description="Платформа")
    timezone: Optional[str] = Field(default=None, description="Часовой пояс магазина (IANA)")
    is_master: bool = Field(default=False, index=True, description="Master-магазин каталога")

    # Доступ к API платформы
    api_token: Optional[str] = Field(default=None, description="Приватный API токен")
    api_mode: str = Field(default="premium", description="premium/private - приватный токен, иначе access token")

    # Вебхуки
    webhook_token: Optional[str] = Field(default=None, index=True, unique=True, description="Токен для идентификации магазина во входящем вебхуке")
    webhook_secret: Optional[str] = Field(default=None, description="Ключ подписи вебхуков")

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
