"""
 * @file: download.py
 * @description: Этап скачивания: ожидание результата экспорта, потоковое сохранение в хранилище, передача на обработку
 * @dependencies: SnapshotJobPoller, ShoptetClient, SnapshotStorage, SnapshotPipelineService, FailedSnapshotService
 * @created: 2026-01-02
"""
import logging
import os
from datetime import datetime
from typing import Callable, Optional

from sqlmodel import Session

from app.core.snapshot_sync_config import snapshot_sync_config
from app.models.job_schedule import ScheduleRunStatus
from app.models.pipeline import PipelineExecution, PipelineStatus
from app.models.shop import Shop
from app.models.snapshot_job import FailedSnapshotStage, SnapshotJob, SnapshotJobStatus
from app.schemas.pipeline_meta import SnapshotJobMeta, merge_meta
from app.schemas.snapshot_import import SnapshotImportReport
from app.services.pipeline.execution_tracker import SnapshotPipelineService
from app.services.pipeline.locks import PipelineLockManager, snapshot_job_lock_name
from app.services.schedules.run_log import ScheduleRunLog
from app.services.shoptet.client import ShoptetClient
from app.services.shoptet.poller import SnapshotJobPoller, reschedule_delay
from app.services.snapshots.retry import FailedSnapshotService
from app.services.storage import SnapshotStorage, build_snapshot_path
from app.utils.date_utils import utc_now_iso
from app.utils.logging_config import log_business_event, log_error_with_context

logger = logging.getLogger("snapshots.download")


class DownloadOutcome:
    SKIPPED = "skipped"
    LOCKED = "pipeline_locked"
    RESCHEDULED = "rescheduled"
    GAVE_UP = "gave_up"
    DOWNLOADED = "downloaded"
    FAILED = "download_failed"
    # только при обработке в этом же процессе
    PROCESSED = "processed"
    NOT_PROCESSED = "not_processed"


class SnapshotDownloader:
    """
    Скачивает результат экспорта. Если результат ещё не готов, задание
    переоткладывается с растущей задержкой (не более max_reschedule_attempts
    попыток опроса), после чего ожидание прекращается.

    reschedule(job_id, auto_process, countdown) и enqueue_process(job_id)
    ставят отложенные задачи; process_inline(job_id, pipeline_lock_held)
    обрабатывает снапшот в текущем процессе (синхронный путь расписаний).

    Одно задание скачивает только один воркер (блокировка snapshot-job:<id>).
    Скачивание и обработка идут под блокировкой (магазин, конвейер) задания;
    если она занята, задание откладывается без расхода попыток опроса.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        locks: PipelineLockManager,
        client: ShoptetClient,
        poller: SnapshotJobPoller,
        pipelines: SnapshotPipelineService,
        storage: SnapshotStorage,
        failures: FailedSnapshotService,
        run_log: ScheduleRunLog,
        reschedule: Callable[[int, bool, int], None],
        enqueue_process: Callable[[int], None],
        process_inline: Callable[[int, bool], SnapshotImportReport],
        max_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.client = client
        self.poller = poller
        self.pipelines = pipelines
        self.storage = storage
        self.failures = failures
        self.run_log = run_log
        self.reschedule = reschedule
        self.enqueue_process = enqueue_process
        self.process_inline = process_inline
        self.max_attempts = max_attempts or snapshot_sync_config.max_reschedule_attempts

    def run(
        self,
        snapshot_job_id: int,
        auto_process: bool = True,
        progressive_wait: bool = False,
        pipeline_lock_held: bool = False,
    ) -> str:
        """
        Args:
            snapshot_job_id: ID задания экспорта
            auto_process: True - обработка отдельной задачей, False - сразу в этом процессе
            progressive_wait: Ждать результат по последовательности вместо одиночного опроса
            pipeline_lock_held: Вызывающий уже держит блокировку (магазин, конвейер)

        Returns:
            str: Одно из значений DownloadOutcome
        """
        job_handle = self.locks.acquire_job_lock(
            snapshot_job_lock_name(snapshot_job_id),
            ttl_seconds=snapshot_sync_config.lock_ttl_seconds,
        )
        if job_handle is None:
            logger.info(f"[SnapshotDownload] Задание {snapshot_job_id} уже обрабатывает другой воркер, пропускаем")
            return DownloadOutcome.SKIPPED

        try:
            job, shop = self._load(snapshot_job_id)
            if job is None or shop is None:
                logger.warning(f"[SnapshotDownload] Задание {snapshot_job_id} или его магазин не найдены")
                return DownloadOutcome.SKIPPED
            if job.status in (SnapshotJobStatus.DISCARDED, SnapshotJobStatus.PROCESSED):
                logger.info(f"[SnapshotDownload] Задание {job.job_id} в статусе {job.status.value}, пропускаем")
                return DownloadOutcome.SKIPPED

            pipeline_key = self.pipelines.pipeline_key_for(job.pipeline_id, job.endpoint or "snapshot")
            pipeline_handle = None
            if not pipeline_lock_held:
                pipeline_handle = self.locks.acquire(job.shop_id, pipeline_key)
                if pipeline_handle is None:
                    delay = snapshot_sync_config.lock_busy_retry_seconds
                    logger.info(
                        f"[SnapshotDownload] Магазин {job.shop_id}: {pipeline_key} выполняется, "
                        f"задание {job.job_id} отложено на {delay} сек"
                    )
                    self.reschedule(job.id, auto_process, delay)
                    return DownloadOutcome.LOCKED

            try:
                return self._run_locked(job, shop, pipeline_key, auto_process, progressive_wait)
            finally:
                self.locks.release(pipeline_handle)
        finally:
            self.locks.release(job_handle)

    def _load(self, snapshot_job_id: int):
        with self.session_factory() as session:
            job = session.get(SnapshotJob, snapshot_job_id)
            shop = session.get(Shop, job.shop_id) if job else None
        return job, shop

    def _run_locked(self, job: SnapshotJob, shop: Shop, pipeline_key: str, auto_process: bool, progressive_wait: bool) -> str:
        execution = self._execution_for(job, pipeline_key)
        job = self.poller.prepare_for_download(job, shop, progressive_wait)

        if not job.result_url:
            return self._handle_not_ready(job, execution, auto_process)

        outcome = self._download(job, shop, execution)
        if outcome != DownloadOutcome.DOWNLOADED:
            return outcome

        if auto_process:
            self.enqueue_process(job.id)
            return outcome

        report = self.process_inline(job.id, True)
        if report.status == PipelineStatus.COMPLETED:
            return DownloadOutcome.PROCESSED
        return DownloadOutcome.NOT_PROCESSED

    def _execution_for(self, job: SnapshotJob, pipeline_key: str) -> PipelineExecution:
        execution = self.pipelines.resume_or_start(
            job.pipeline_id,
            job.shop_id,
            pipeline_key,
            {"job_id": job.job_id},
        )
        if job.pipeline_id != str(execution.id):
            self._update_job(job.id, meta={"pipeline_id": str(execution.id)})
        return execution

    def _handle_not_ready(self, job: SnapshotJob, execution: PipelineExecution, auto_process: bool) -> str:
        attempt = int((job.meta or {}).get("retry_attempts") or 0) + 1
        self._update_job(job.id, status=SnapshotJobStatus.WAITING_RESULT, meta={"retry_attempts": attempt})
        self.pipelines.update(execution, status=PipelineStatus.WAITING_RESULT, meta={"retry_attempts": attempt})

        if attempt < self.max_attempts:
            delay = reschedule_delay(attempt)
            logger.info(
                f"[SnapshotDownload] Результат задания {job.job_id} ещё не готов, "
                f"повтор через {delay} сек (попытка {attempt}/{self.max_attempts})"
            )
            self.reschedule(job.id, auto_process, delay)
            return DownloadOutcome.RESCHEDULED

        logger.warning(
            f"[SnapshotDownload] Результат задания {job.job_id} не готов после {attempt} попыток, ожидание прекращено"
        )
        self._update_job(job.id, meta={"gave_up_at": utc_now_iso()})
        schedule_id = (job.meta or {}).get("schedule_id")
        if schedule_id:
            self.run_log.append(
                schedule_id,
                ScheduleRunStatus.WAITING_RESULT,
                f"Снапшот {job.job_id} не готов после {attempt} попыток опроса, ожидание прекращено",
            )
        return DownloadOutcome.GAVE_UP

    def _download(self, job: SnapshotJob, shop: Shop, execution: PipelineExecution) -> str:
        self._update_job(job.id, status=SnapshotJobStatus.DOWNLOADING)
        self.pipelines.update(
            execution,
            status=PipelineStatus.DOWNLOADING,
            started_at=datetime.utcnow(),
            meta={"job_status": SnapshotJobStatus.DOWNLOADING.value},
        )

        relative_path = build_snapshot_path(shop.id, job.result_url, job.job_id)
        temp_path = None
        try:
            temp_path = self.client.download_job_result(shop, job.result_url)
            with open(temp_path, "rb") as stream:
                self.storage.put(relative_path, stream)
        except Exception as e:
            log_error_with_context(e, {
                "operation": "download_snapshot",
                "shop_id": shop.id,
                "job_id": job.job_id,
                "url": job.result_url,
            })
            self._update_job(job.id, status=SnapshotJobStatus.DOWNLOAD_FAILED, meta={"error": str(e)})
            self.pipelines.finish(execution, status=PipelineStatus.DOWNLOAD_FAILED, meta={"error": str(e)})
            self.failures.register(job.id, FailedSnapshotStage.DOWNLOAD, str(e))
            return DownloadOutcome.FAILED
        finally:
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)

        now = datetime.utcnow()
        self._update_job(
            job.id,
            status=SnapshotJobStatus.DOWNLOADED,
            snapshot_path=relative_path,
            meta={"url": job.result_url, "downloaded_at": utc_now_iso()},
        )
        self.pipelines.update(
            execution,
            status=PipelineStatus.DOWNLOADED,
            downloaded_at=now,
            meta={"snapshot_path": relative_path, "job_status": SnapshotJobStatus.DOWNLOADED.value},
        )
        log_business_event(
            "snapshot_downloaded",
            "Снапшот скачан",
            shop_id=shop.id,
            job_id=job.job_id,
            path=relative_path,
        )
        return DownloadOutcome.DOWNLOADED

    def _update_job(
        self,
        snapshot_job_id: int,
        status: Optional[SnapshotJobStatus] = None,
        snapshot_path: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> None:
        with self.session_factory() as session:
            job = session.get(SnapshotJob, snapshot_job_id)
            if status is not None:
                job.status = status
            if snapshot_path is not None:
                job.snapshot_path = snapshot_path
            if meta:
                job.meta = merge_meta(job.meta, meta, schema=SnapshotJobMeta)
            job.updated_at = datetime.utcnow()
            session.add(job)
            session.commit()
