"""
 * @file: locks.py
 * @description: Неблокирующие блокировки конвейера по ключу (магазин, тип синхронизации) с истечением срока
 * @dependencies: PipelineLock, SQLModel, sqlalchemy
 * @created: 2024-06-13
 * @updated: 2026-01-02
"""
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.snapshot_sync_config import snapshot_sync_config
from app.models.pipeline import PipelineLock

logger = logging.getLogger("snapshots.pipeline")


@dataclass(frozen=True)
class LockHandle:
    """Выданная блокировка. Снять её может только владелец (owner)."""
    lock_key: str
    owner: str
    expires_at: datetime


def normalize_lock_part(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")


def pipeline_lock_key(shop_id: int, pipeline_key: str) -> str:
    return f"snapshot_lock:{shop_id}:{normalize_lock_part(pipeline_key)}"


def job_lock_key(job_name: str) -> str:
    return f"job-lock:{normalize_lock_part(job_name)}"


def snapshot_job_lock_name(snapshot_job_id: int) -> str:
    """Имя блокировки одного задания экспорта: скачивание и обработку ведёт один воркер."""
    return f"snapshot-job:{snapshot_job_id}"


class PipelineLockManager:
    """
    Выдаёт не более одной живой блокировки на ключ. Захват не ждёт:
    если блокировка занята, сразу возвращается None, и вызывающий
    пропускает магазин до следующего цикла.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds or snapshot_sync_config.lock_ttl_seconds)
        self.clock = clock

    def acquire(self, shop_id: int, pipeline_key: str, ttl_seconds: Optional[int] = None) -> Optional[LockHandle]:
        """Блокировка для пары (магазин, конвейер)."""
        return self._acquire(pipeline_lock_key(shop_id, pipeline_key), shop_id, pipeline_key, ttl_seconds)

    def acquire_job_lock(self, job_name: str, ttl_seconds: Optional[int] = None) -> Optional[LockHandle]:
        """Блокировка периодической задачи целиком (sweep, schedule runner)."""
        ttl = ttl_seconds or snapshot_sync_config.job_lock_ttl_seconds
        return self._acquire(job_lock_key(job_name), None, job_name, ttl)

    def _acquire(self, lock_key: str, shop_id: Optional[int], pipeline_key: str, ttl_seconds: Optional[int]) -> Optional[LockHandle]:
        now = self.clock()
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else self.ttl
        owner = uuid.uuid4().hex
        expires_at = now + ttl

        with self.session_factory() as session:
            lock = session.exec(select(PipelineLock).where(PipelineLock.lock_key == lock_key)).first()

            if lock:
                if lock.expires_at > now:
                    logger.info(f"[PipelineLock] {lock_key} занята владельцем {lock.owner} до {lock.expires_at.isoformat()}")
                    return None

                # Лок устарел - перехватываем только если его никто не успел перехватить раньше
                result = session.execute(
                    update(PipelineLock)
                    .where(PipelineLock.lock_key == lock_key)
                    .where(PipelineLock.owner == lock.owner)
                    .values(owner=owner, acquired_at=now, expires_at=expires_at, shop_id=shop_id, pipeline_key=pipeline_key)
                )
                session.commit()
                if result.rowcount != 1:
                    logger.info(f"[PipelineLock] {lock_key} перехвачена другим воркером")
                    return None
                logger.warning(f"[PipelineLock] {lock_key} перехвачена после истечения срока (прежний владелец {lock.owner})")
                return LockHandle(lock_key=lock_key, owner=owner, expires_at=expires_at)

            session.add(PipelineLock(
                lock_key=lock_key,
                shop_id=shop_id,
                pipeline_key=pipeline_key,
                owner=owner,
                acquired_at=now,
                expires_at=expires_at,
            ))
            try:
                session.commit()
            except IntegrityError:
                # Параллельный воркер вставил ту же блокировку первым
                session.rollback()
                logger.info(f"[PipelineLock] {lock_key} уже захвачена параллельно")
                return None

        logger.debug(f"[PipelineLock] {lock_key} захвачена до {expires_at.isoformat()}")
        return LockHandle(lock_key=lock_key, owner=owner, expires_at=expires_at)

    def release(self, handle: Optional[LockHandle]) -> None:
        """
        Снимает блокировку. Идемпотентно: повторный вызов или истёкшая
        блокировка ничего не делают, а чужую (перехваченную) блокировку не трогают.
        """
        if handle is None:
            return

        with self.session_factory() as session:
            result = session.execute(
                delete(PipelineLock)
                .where(PipelineLock.lock_key == handle.lock_key)
                .where(PipelineLock.owner == handle.owner)
            )
            session.commit()

        if result.rowcount:
            logger.debug(f"[PipelineLock] {handle.lock_key} освобождена")

    def is_locked(self, shop_id: int, pipeline_key: str) -> bool:
        """Проверяет, есть ли живая блокировка."""
        with self.session_factory() as session:
            lock = session.get(PipelineLock, pipeline_lock_key(shop_id, pipeline_key))
            return bool(lock and lock.expires_at > self.clock())
