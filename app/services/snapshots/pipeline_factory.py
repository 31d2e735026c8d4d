"""
 * @file: pipeline_factory.py
 * @description: Сборка сервисов конвейера снапшотов с общими зависимостями (сессии, клиент, хранилище, очереди)
 * @dependencies: database.SessionLocal, ShoptetClient, SnapshotStorage, Celery задачи
 * @created: 2026-01-02
"""
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlmodel import Session

from app.database import SessionLocal
from app.services.pipeline.cursor_service import ShopSyncCursorService
from app.services.pipeline.execution_tracker import SnapshotPipelineService
from app.services.pipeline.locks import PipelineLockManager
from app.services.schedules.run_log import ScheduleRunLog
from app.services.schedules.runner import JobScheduleRunner
from app.services.shoptet.client import ShoptetClient
from app.services.shoptet.poller import SnapshotJobPoller
from app.services.shoptet.snapshot_service import SnapshotService
from app.services.snapshots.download import SnapshotDownloader
from app.services.snapshots.processing import SnapshotProcessor
from app.services.snapshots.retry import FailedSnapshotService
from app.services.storage import SnapshotStorage


@dataclass
class TaskQueue:
    """Постановка отложенных задач. По умолчанию - Celery, в тестах подменяется."""
    download: Callable[[int, bool, bool, int], None]
    process: Callable[[int], None]
    variants: Callable[[List[str]], None]
    schedule: Callable[[str], None]


def celery_queue() -> TaskQueue:
    # Импорт внутри функции: модуль задач сам собирает конвейер через эту фабрику
    from app.services import schedule_tasks, snapshot_tasks

    def download(job_id: int, auto_process: bool = True, progressive_wait: bool = False, countdown: int = 0) -> None:
        snapshot_tasks.download_snapshot.apply_async(
            args=[job_id],
            kwargs={"auto_process": auto_process, "progressive_wait": progressive_wait},
            countdown=countdown or None,
        )

    return TaskQueue(
        download=download,
        process=lambda job_id: snapshot_tasks.process_snapshot.delay(job_id),
        variants=lambda ids: snapshot_tasks.recalculate_variant_metrics.delay(ids),
        schedule=lambda schedule_id: schedule_tasks.run_job_schedule.delay(schedule_id),
    )


@dataclass
class SnapshotPipeline:
    session_factory: Callable[[], Session]
    client: ShoptetClient
    queue: TaskQueue
    locks: PipelineLockManager
    cursors: ShopSyncCursorService
    pipelines: SnapshotPipelineService
    run_log: ScheduleRunLog
    failures: FailedSnapshotService
    storage: SnapshotStorage
    poller: SnapshotJobPoller
    snapshots: SnapshotService
    processor: SnapshotProcessor
    downloader: SnapshotDownloader
    runner: JobScheduleRunner

    def close(self) -> None:
        self.client.close()


def build_snapshot_pipeline(
    session_factory: Optional[Callable[[], Session]] = None,
    client: Optional[ShoptetClient] = None,
    storage: Optional[SnapshotStorage] = None,
    queue: Optional[TaskQueue] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SnapshotPipeline:
    """
    Собирает все сервисы конвейера.

    Args:
        session_factory: Фабрика сессий (по умолчанию SessionLocal)
        client: Клиент платформы
        storage: Хранилище снапшотов
        queue: Постановка задач (по умолчанию Celery)
        sleep: Функция сна для прогрессивного ожидания
    """
    session_factory = session_factory or SessionLocal
    client = client or ShoptetClient()
    storage = storage or SnapshotStorage()
    queue = queue or celery_queue()

    locks = PipelineLockManager(session_factory)
    cursors = ShopSyncCursorService(session_factory)
    pipelines = SnapshotPipelineService(session_factory)
    run_log = ScheduleRunLog(session_factory)
    failures = FailedSnapshotService(session_factory)
    poller = SnapshotJobPoller(session_factory, client, sleep=sleep)
    snapshots = SnapshotService(session_factory, client, pipelines)
    processor = SnapshotProcessor(
        session_factory,
        locks,
        storage,
        pipelines,
        cursors,
        failures,
        dispatch_variants=queue.variants,
    )
    downloader = SnapshotDownloader(
        session_factory,
        locks,
        client,
        poller,
        pipelines,
        storage,
        failures,
        run_log,
        reschedule=lambda job_id, auto_process, countdown: queue.download(job_id, auto_process, False, countdown),
        enqueue_process=queue.process,
        process_inline=processor.run_tracked,
    )
    runner = JobScheduleRunner(
        session_factory,
        locks,
        cursors,
        snapshots,
        downloader,
        run_log,
        enqueue_schedule=queue.schedule,
        enqueue_download=lambda job_id: queue.download(job_id, True, True, 0),
    )
    return SnapshotPipeline(
        session_factory=session_factory,
        client=client,
        queue=queue,
        locks=locks,
        cursors=cursors,
        pipelines=pipelines,
        run_log=run_log,
        failures=failures,
        storage=storage,
        poller=poller,
        snapshots=snapshots,
        processor=processor,
        downloader=downloader,
        runner=runner,
    )
