"""
 * @file: cursor_service.py
 * @description: Хранилище курсоров инкрементальной синхронизации (магазин, ключ) -> водяной знак
 * @dependencies: SQLModel, Session, ShopSyncCursor
 * @created: 2025-06-11
 * @updated: 2026-01-02
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlmodel import Session, select

from app.models.shop_sync_cursor import ShopSyncCursor
from app.utils.date_utils import parse_iso_datetime

logger = logging.getLogger("snapshots.pipeline")


class ShopSyncCursorService:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def get(self, shop_id: int, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Получает значение курсора

        Args:
            shop_id: ID магазина
            key: Ключ курсора (orders.change_time ...)
            default: Значение, если курсора нет

        Returns:
            str | None: Водяной знак или default
        """
        with self.session_factory() as session:
            cursor = self._find(session, shop_id, key)
            if cursor and cursor.cursor:
                return cursor.cursor
            return default

    def get_meta(self, shop_id: int, key: str) -> Dict[str, Any]:
        with self.session_factory() as session:
            cursor = self._find(session, shop_id, key)
            return dict(cursor.meta or {}) if cursor else {}

    def put(self, shop_id: int, key: str, value: Optional[str], meta: Optional[Dict[str, Any]] = None) -> ShopSyncCursor:
        """
        Обновляет или создает курсор. Водяной знак не уменьшается: значение
        старше сохранённого игнорируется, метаданные при этом обновляются.

        Args:
            shop_id: ID магазина
            key: Ключ курсора
            value: Новый водяной знак (ISO-8601 или непрозрачный токен)
            meta: Метаданные (окно, время обновления)

        Returns:
            ShopSyncCursor: Обновлённая или созданная запись
        """
        with self.session_factory() as session:
            cursor = self._find(session, shop_id, key)

            if cursor:
                if self._is_regression(cursor.cursor, value):
                    logger.warning(
                        f"[Cursor] shop={shop_id} key={key}: значение {value} старше сохранённого {cursor.cursor}, курсор не меняется"
                    )
                else:
                    cursor.cursor = value
                cursor.meta = dict(meta) if meta else None
                cursor.updated_at = datetime.utcnow()
            else:
                cursor = ShopSyncCursor(shop_id=shop_id, key=key, cursor=value, meta=dict(meta) if meta else None)

            session.add(cursor)
            session.commit()
            session.refresh(cursor)
            return cursor

    def touch_meta(self, shop_id: int, key: str, meta: Dict[str, Any]) -> None:
        """Сливает метаданные курсора, не трогая сам водяной знак."""
        if not meta:
            return

        with self.session_factory() as session:
            cursor = self._find(session, shop_id, key)
            if not cursor:
                return
            merged = dict(cursor.meta or {})
            merged.update(meta)
            cursor.meta = merged
            cursor.updated_at = datetime.utcnow()
            session.add(cursor)
            session.commit()

    @staticmethod
    def _find(session: Session, shop_id: int, key: str) -> Optional[ShopSyncCursor]:
        statement = select(ShopSyncCursor).where(ShopSyncCursor.shop_id == shop_id, ShopSyncCursor.key == key)
        return session.exec(statement).first()

    @staticmethod
    def _is_regression(current: Optional[str], new: Optional[str]) -> bool:
        if not current or not new:
            return False
        current_dt = parse_iso_datetime(current)
        new_dt = parse_iso_datetime(new)
        if current_dt is None or new_dt is None:
            # Непрозрачные токены не сравниваем
            return False
        return new_dt < current_dt
