"""
 * @file: runner.py
 * @description: Запуск расписаний: проверка cron, выбор магазинов, инкрементальная синхронизация по окну под блокировкой
 * @dependencies: celery.schedules.crontab, PipelineLockManager, ShopSyncCursorService, SnapshotService, SnapshotDownloader
 * @created: 2026-01-02
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from uuid import UUID

from celery.schedules import crontab
from sqlmodel import Session, select

from app.core.snapshot_sync_config import snapshot_sync_config
from app.models.job_schedule import JobSchedule, ScheduleRunStatus
from app.models.shop import Shop, ShopProvider
from app.schemas.pipeline_meta import CursorTarget, ExecutionMeta
from app.services.pipeline.cursor_service import ShopSyncCursorService
from app.services.pipeline.locks import PipelineLockManager
from app.services.pipeline.window import SyncWindow, build_lookback_window, build_window
from app.services.schedules.run_log import ScheduleRunLog
from app.services.shoptet.snapshot_service import ORDERS_ENDPOINT, PRODUCTS_ENDPOINT, SnapshotService
from app.services.snapshots.download import DownloadOutcome, SnapshotDownloader
from app.utils.date_utils import resolve_timezone, to_iso
from app.utils.logging_config import log_business_event, log_error_with_context

logger = logging.getLogger("schedules")

ORDERS_FETCH_NEW = "orders.fetch_new"
ORDERS_REFRESH_STATUSES = "orders.refresh_statuses"
CUSTOMERS_FETCH = "customers.fetch_shoptet"
PRODUCTS_IMPORT_MASTER = "products.import_master"


@dataclass(frozen=True)
class IncrementalSync:
    """Параметры инкрементальной синхронизации для типа задачи."""
    pipeline_key: str
    cursor_key: str
    endpoint: str
    default_fallback_hours: int
    master_only: bool = False


INCREMENTAL_SYNCS: Dict[str, IncrementalSync] = {
    ORDERS_FETCH_NEW: IncrementalSync(
        pipeline_key="orders.incremental",
        cursor_key="orders.change_time",
        endpoint=ORDERS_ENDPOINT,
        default_fallback_hours=snapshot_sync_config.default_fallback_lookback_hours,
    ),
    PRODUCTS_IMPORT_MASTER: IncrementalSync(
        pipeline_key="products.incremental",
        cursor_key="products.change_time",
        endpoint=PRODUCTS_ENDPOINT,
        default_fallback_hours=snapshot_sync_config.products_fallback_lookback_hours,
        master_only=True,
    ),
}

STATUS_REFRESH_PIPELINE = "orders.status_refresh"


def parse_cron(expression: str) -> crontab:
    """
    Cron из 5 полей (минута, час, день месяца, месяц, день недели).
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Cron выражение должно содержать 5 полей: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_week=day_of_week,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
    )


def cron_matches(expression: str, moment: datetime) -> bool:
    """Совпадает ли минута moment (уже в часовом поясе расписания) с cron."""
    entry = parse_cron(expression)
    # В celery воскресенье = 0
    weekday = moment.isoweekday() % 7
    return (
        moment.minute in entry.minute
        and moment.hour in entry.hour
        and moment.day in entry.day_of_month
        and moment.month in entry.month_of_year
        and weekday in entry.day_of_week
    )


def _int_option(options: dict, key: str, default: int) -> int:
    try:
        return int(options.get(key, default))
    except (TypeError, ValueError):
        return default


class JobScheduleRunner:
    """
    Точка входа периодических задач. Для каждого магазина: блокировка
    (магазин, конвейер) -> окно -> запрос снапшота -> скачивание и обработка
    в этом же процессе -> снятие блокировки. Итог каждого запуска
    записывается в журнал ScheduleRun.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        locks: PipelineLockManager,
        cursors: ShopSyncCursorService,
        snapshots: SnapshotService,
        downloader: SnapshotDownloader,
        run_log: ScheduleRunLog,
        enqueue_schedule: Optional[Callable[[str], None]] = None,
        enqueue_download: Optional[Callable[[int], None]] = None,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.cursors = cursors
        self.snapshots = snapshots
        self.downloader = downloader
        self.run_log = run_log
        self.enqueue_schedule = enqueue_schedule
        self.enqueue_download = enqueue_download

    # Проверка и постановка расписаний

    def is_due(self, schedule: JobSchedule, now: Optional[datetime] = None) -> bool:
        if not schedule.enabled or not schedule.cron_expression:
            return False

        now = now or datetime.now(timezone.utc)
        local = now.astimezone(resolve_timezone(schedule.timezone))
        try:
            if not cron_matches(schedule.cron_expression, local):
                return False
        except ValueError as e:
            logger.warning(f"[Schedule] Некорректный cron у расписания {schedule.id}: {e}")
            return False

        # Сравниваем с постановкой/стартом, а не с итоговой записью запуска
        last = self.run_log.latest(schedule.id, statuses=[ScheduleRunStatus.QUEUED, ScheduleRunStatus.RUNNING])
        if last is None:
            return True
        now_naive = now.astimezone(timezone.utc).replace(tzinfo=None)
        return last.created_at <= now_naive - timedelta(minutes=1)

    def dispatch_due(self, now: Optional[datetime] = None, job_type: Optional[str] = None) -> List[str]:
        """Ставит в очередь все расписания, которым пора запускаться."""
        with self.session_factory() as session:
            statement = select(JobSchedule).where(JobSchedule.enabled == True)  # noqa: E712
            if job_type:
                statement = statement.where(JobSchedule.job_type == job_type)
            schedules = list(session.exec(statement).all())

        dispatched = []
        for schedule in schedules:
            if not self.is_due(schedule, now):
                continue
            self.run_log.append(schedule.id, ScheduleRunStatus.QUEUED)
            if self.enqueue_schedule is not None:
                self.enqueue_schedule(str(schedule.id))
            dispatched.append(str(schedule.id))
        return dispatched

    # Выполнение

    def run(self, schedule_id: str) -> Optional[str]:
        """
        Выполняет одно расписание.

        Returns:
            str | None: Итоговое сообщение или None, если расписание не найдено/выключено/занято
        """
        with self.session_factory() as session:
            schedule = session.get(JobSchedule, _uuid(schedule_id))

        if schedule is None or not schedule.enabled:
            logger.info(f"[Schedule] Расписание {schedule_id} не найдено или выключено")
            return None

        handlers = {
            ORDERS_FETCH_NEW: self._run_incremental,
            PRODUCTS_IMPORT_MASTER: self._run_incremental,
            ORDERS_REFRESH_STATUSES: self._run_status_refresh,
            CUSTOMERS_FETCH: self._run_customers,
        }
        handler = handlers.get(schedule.job_type)
        if handler is None:
            message = f"Неподдерживаемый тип задачи: {schedule.job_type}"
            self.run_log.append(schedule.id, ScheduleRunStatus.SKIPPED, message)
            return message

        handle = self.locks.acquire_job_lock(schedule.job_type)
        if handle is None:
            logger.info(f"[Schedule] Задача {schedule.job_type} уже выполняется, пропускаем")
            return None

        try:
            self.run_log.append(schedule.id, ScheduleRunStatus.RUNNING)
            try:
                processed, message = handler(schedule)
            except Exception as e:
                self.run_log.append(schedule.id, ScheduleRunStatus.FAILED, str(e))
                log_error_with_context(e, {"operation": "run_schedule", "schedule_id": schedule.id, "job_type": schedule.job_type})
                raise

            self.run_log.append(schedule.id, ScheduleRunStatus.COMPLETED, message, shops_processed=processed)
            log_business_event(
                "schedule_completed",
                message,
                schedule_id=schedule.id,
                job_type=schedule.job_type,
                shops=processed,
            )
            return message
        finally:
            self.locks.release(handle)

    def resolve_shops(self, schedule: JobSchedule, master_only: bool = False) -> List[Shop]:
        with self.session_factory() as session:
            if schedule.shop_id:
                shop = session.get(Shop, schedule.shop_id)
                return [shop] if shop else []

            statement = select(Shop).where(Shop.provider == ShopProvider.SHOPTET)
            if master_only:
                statement = statement.where(Shop.is_master == True)  # noqa: E712
            shop_ids = (schedule.options or {}).get("shop_ids")
            if shop_ids:
                statement = statement.where(Shop.id.in_([int(i) for i in shop_ids]))
            return list(session.exec(statement.order_by(Shop.id)).all())

    def _run_incremental(self, schedule: JobSchedule):
        sync = INCREMENTAL_SYNCS[schedule.job_type]
        options = schedule.options or {}
        fallback_hours = max(1, _int_option(options, "fallback_lookback_hours", sync.default_fallback_hours))
        full_rescan_hours = max(0, _int_option(options, "full_rescan_hours", 0))

        processed = 0
        for shop in self.resolve_shops(schedule, master_only=sync.master_only):
            handle = self.locks.acquire(shop.id, sync.pipeline_key)
            if handle is None:
                logger.info(f"[Schedule] Магазин {shop.id}: {sync.pipeline_key} уже выполняется, пропускаем")
                continue
            try:
                cursor = self.cursors.get(shop.id, sync.cursor_key)
                window = build_window(shop.timezone, cursor, fallback_hours, full_rescan_hours)
                if window is None:
                    continue
                cursor_target = CursorTarget(
                    key=sync.cursor_key,
                    value=to_iso(window.end),
                    window=window.to_meta(),
                )
                if self._sync_window(schedule, shop, sync.pipeline_key, sync.endpoint, window, cursor_target):
                    processed += 1
            finally:
                self.locks.release(handle)

        return processed, self._summary(processed)

    def _run_status_refresh(self, schedule: JobSchedule):
        options = schedule.options or {}
        lookback = _int_option(options, "lookback_hours", snapshot_sync_config.status_refresh_lookback_hours)
        lookback = min(max(lookback, 1), snapshot_sync_config.status_refresh_max_lookback_hours)

        processed = 0
        for shop in self.resolve_shops(schedule):
            handle = self.locks.acquire(shop.id, STATUS_REFRESH_PIPELINE)
            if handle is None:
                continue
            try:
                window = build_lookback_window(shop.timezone, lookback)
                if window is None:
                    continue
                if self._sync_window(schedule, shop, STATUS_REFRESH_PIPELINE, ORDERS_ENDPOINT, window, None):
                    processed += 1
            finally:
                self.locks.release(handle)

        return processed, self._summary(processed)

    def _run_customers(self, schedule: JobSchedule):
        requested = 0
        for shop in self.resolve_shops(schedule):
            job = self.snapshots.request_customers_snapshot(shop, schedule_id=str(schedule.id))
            if self.enqueue_download is not None:
                self.enqueue_download(job.id)
            requested += 1
        return requested, f"Запрошен снапшот клиентов для {requested} магазин(ов)"

    def _sync_window(
        self,
        schedule: JobSchedule,
        shop: Shop,
        pipeline_key: str,
        endpoint: str,
        window: SyncWindow,
        cursor_target: Optional[CursorTarget],
    ) -> bool:
        params = {
            "changeTimeFrom": to_iso(window.start),
            "changeTimeTo": to_iso(window.end),
        }
        request = self.snapshots.request_orders_snapshot if endpoint == ORDERS_ENDPOINT else self.snapshots.request_products_snapshot
        job = request(
            shop,
            params,
            pipeline_key=pipeline_key,
            schedule_id=str(schedule.id),
            cursor=cursor_target,
            execution_meta=ExecutionMeta(window=window.to_meta()),
        )
        outcome = self.downloader.run(job.id, auto_process=False, progressive_wait=True, pipeline_lock_held=True)
        return outcome == DownloadOutcome.PROCESSED

    @staticmethod
    def _summary(processed: int) -> str:
        if processed:
            return f"Синхронизировано магазинов: {processed}"
        return "Ни один магазин не синхронизирован (блокировка активна или нет изменений)"


def _uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))
