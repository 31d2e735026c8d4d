"""
 * @file: processing.py
 * @description: Потоковая обработка gzip снапшота (JSON Lines): импорт записей, пересчёт вариантов, продвижение курсора
 * @dependencies: importers, SnapshotStorage, SnapshotPipelineService, ShopSyncCursorService, FailedSnapshotService
 * @created: 2026-01-02
"""
import gzip
import json
import logging
import os
import zlib
from datetime import datetime
from typing import Callable, List, Optional

from sqlmodel import Session

from app.core.snapshot_sync_config import snapshot_sync_config
from app.models.pipeline import PipelineExecution, PipelineStatus
from app.models.shop import Shop
from app.models.snapshot_job import FailedSnapshotStage, SnapshotJob, SnapshotJobStatus
from app.schemas.pipeline_meta import CursorTarget, SnapshotJobMeta, merge_meta
from app.schemas.snapshot_import import ImportOutcome, SkipReason, SnapshotImportReport
from app.services.pipeline.cursor_service import ShopSyncCursorService
from app.services.pipeline.execution_tracker import SnapshotPipelineService
from app.services.pipeline.locks import PipelineLockManager
from app.services.snapshots.exceptions import PipelineLockBusyError, RecordImportError
from app.services.snapshots.importers import resolve_importer
from app.services.snapshots.retry import FailedSnapshotService
from app.services.storage import SnapshotStorage
from app.utils.date_utils import parse_iso_datetime, utc_now_iso
from app.utils.logging_config import log_business_event, log_error_with_context

logger = logging.getLogger("snapshots.import")

GZIP_MAGIC = b"\x1f\x8b"
COMMIT_EVERY = 500

# Обрыв или порча gzip посреди потока: повтор того же файла не поможет
CORRUPT_GZIP_ERRORS = (EOFError, gzip.BadGzipFile, zlib.error)


def chunked(values: List[str], size: int) -> List[List[str]]:
    return [values[i:i + size] for i in range(0, len(values), size)]


def _later(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return current
    candidate_dt = parse_iso_datetime(candidate)
    if candidate_dt is None:
        return current
    current_dt = parse_iso_datetime(current) if current else None
    if current_dt is None or candidate_dt > current_dt:
        return candidate
    return current


class SnapshotProcessor:
    """
    Читает скачанный снапшот построчно, не загружая его в память.
    Битые строки и записи неизвестного типа пропускаются с причиной,
    ошибка уровня записи (RecordImportError) считается и не прерывает файл.
    Повреждённый gzip завершает запуск статусом invalid_snapshot без повторов.
    Любое другое исключение завершает запуск статусом error и пробрасывается.
    Обработка идёт под блокировкой (магазин, конвейер) задания.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        locks: PipelineLockManager,
        storage: SnapshotStorage,
        pipelines: SnapshotPipelineService,
        cursors: ShopSyncCursorService,
        failures: FailedSnapshotService,
        dispatch_variants: Callable[[List[str]], None],
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.storage = storage
        self.pipelines = pipelines
        self.cursors = cursors
        self.failures = failures
        self.dispatch_variants = dispatch_variants
        self.batch_size = batch_size or snapshot_sync_config.variant_batch_size

    def run(self, snapshot_job_id: int, pipeline_lock_held: bool = False) -> SnapshotImportReport:
        """
        Args:
            snapshot_job_id: ID задания экспорта
            pipeline_lock_held: Вызывающий уже держит блокировку (магазин, конвейер)

        Raises:
            PipelineLockBusyError: Блокировка занята другим запуском
        """
        with self.session_factory() as session:
            job = session.get(SnapshotJob, snapshot_job_id)
            shop = session.get(Shop, job.shop_id) if job else None

        if job is None or shop is None:
            logger.warning(f"[SnapshotImport] Задание {snapshot_job_id} или его магазин не найдены")
            return SnapshotImportReport(status=PipelineStatus.ERROR)

        pipeline_key = self.pipelines.pipeline_key_for(job.pipeline_id, job.endpoint or "snapshot")
        handle = None
        if not pipeline_lock_held:
            handle = self.locks.acquire(job.shop_id, pipeline_key)
            if handle is None:
                raise PipelineLockBusyError(
                    f"Магазин {job.shop_id}: {pipeline_key} выполняется, обработка задания {job.job_id} отложена"
                )

        try:
            return self._run_locked(job, shop, pipeline_key)
        finally:
            self.locks.release(handle)

    def _run_locked(self, job: SnapshotJob, shop: Shop, pipeline_key: str) -> SnapshotImportReport:
        execution = self.pipelines.resume_or_start(
            job.pipeline_id,
            job.shop_id,
            pipeline_key,
            {"job_id": job.job_id},
        )
        if job.pipeline_id != str(execution.id):
            self._update_job(job.id, meta={"pipeline_id": str(execution.id)})

        if not job.snapshot_path:
            return self._structural_failure(job, execution, PipelineStatus.MISSING_SNAPSHOT, SnapshotJobStatus.MISSING_SNAPSHOT, "У задания нет пути к снапшоту")

        path = self.storage.path(job.snapshot_path)
        if not os.path.isfile(path):
            return self._structural_failure(job, execution, PipelineStatus.MISSING_SNAPSHOT, SnapshotJobStatus.MISSING_SNAPSHOT, f"Файл снапшота не найден: {job.snapshot_path}")

        if not self._is_gzip(path):
            return self._structural_failure(job, execution, PipelineStatus.INVALID_SNAPSHOT, SnapshotJobStatus.INVALID_SNAPSHOT, f"Файл снапшота не является gzip: {job.snapshot_path}")

        self._update_job(job.id, status=SnapshotJobStatus.PROCESSING)
        execution = self.pipelines.update(
            execution,
            status=PipelineStatus.PROCESSING,
            started_at=datetime.utcnow(),
            meta={"path": job.snapshot_path, "job_status": SnapshotJobStatus.PROCESSING.value},
        )

        try:
            report = self._stream(job, shop, path)
            report.dispatched_batches = self._dispatch_variant_batches(report.affected_ids)
        except CORRUPT_GZIP_ERRORS as e:
            return self._structural_failure(job, execution, PipelineStatus.INVALID_SNAPSHOT, SnapshotJobStatus.INVALID_SNAPSHOT, f"Файл снапшота повреждён: {job.snapshot_path} ({e})")
        except Exception as e:
            log_error_with_context(e, {
                "operation": "process_snapshot",
                "shop_id": shop.id,
                "job_id": job.job_id,
                "execution_id": execution.id,
            })
            # Снапшот скачан, но не обработан: задание не остаётся в processing
            self._update_job(job.id, status=SnapshotJobStatus.DOWNLOADED, meta={"error": str(e)})
            self.pipelines.finish(execution, status=PipelineStatus.ERROR, meta={"error": str(e)})
            raise

        self._complete(job, shop, execution, report)
        return report

    def run_tracked(self, snapshot_job_id: int, pipeline_lock_held: bool = False) -> SnapshotImportReport:
        """Синхронный путь: ошибка обработки сразу регистрируется для повтора."""
        try:
            return self.run(snapshot_job_id, pipeline_lock_held)
        except PipelineLockBusyError:
            raise
        except Exception as e:
            self.failures.register(snapshot_job_id, FailedSnapshotStage.PROCESS, str(e))
            raise

    @staticmethod
    def _is_gzip(path: str) -> bool:
        try:
            with open(path, "rb") as handle:
                return handle.read(2) == GZIP_MAGIC
        except OSError:
            return False

    def _stream(self, job: SnapshotJob, shop: Shop, path: str) -> SnapshotImportReport:
        report = SnapshotImportReport(status=PipelineStatus.COMPLETED)
        importer = resolve_importer(job.endpoint)
        if importer is None:
            logger.warning(f"[SnapshotImport] Неизвестный endpoint {job.endpoint} у задания {job.job_id}, записи пропускаются")

        affected = set()
        pending = 0
        with self.session_factory() as session, gzip.open(path, "rb") as lines:
            for raw in lines:
                try:
                    line = raw.decode("utf-8").strip()
                except UnicodeDecodeError:
                    report.count_skip(SkipReason.INVALID_ENCODING)
                    continue
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    report.count_skip(SkipReason.MALFORMED_JSON)
                    continue
                if not isinstance(record, dict):
                    report.count_skip(SkipReason.NOT_AN_OBJECT)
                    continue
                if importer is None:
                    report.count_skip(SkipReason.UNKNOWN_ENDPOINT)
                    continue

                try:
                    result = importer(session, shop, record)
                except RecordImportError as e:
                    report.failed_count += 1
                    logger.warning(f"[SnapshotImport] Запись задания {job.job_id} не импортирована: {e.message}")
                    continue

                if result.outcome == ImportOutcome.IMPORTED:
                    report.processed_count += 1
                    affected.update(result.affected_ids)
                    report.last_change_time = _later(report.last_change_time, result.change_time)
                    pending += 1
                elif result.outcome == ImportOutcome.SKIPPED:
                    report.count_skip(result.reason or SkipReason.MISSING_IDENTIFIER)
                else:
                    report.failed_count += 1

                if pending >= COMMIT_EVERY:
                    session.commit()
                    pending = 0

            session.commit()

        report.affected_ids = sorted(affected)
        return report

    def _dispatch_variant_batches(self, variant_ids: List[str]) -> int:
        batches = chunked(variant_ids, self.batch_size)
        for batch in batches:
            self.dispatch_variants(batch)
        return len(batches)

    def _complete(self, job: SnapshotJob, shop: Shop, execution: PipelineExecution, report: SnapshotImportReport) -> None:
        self._update_job(
            job.id,
            status=SnapshotJobStatus.PROCESSED,
            processed=True,
            meta={"processed_count": report.processed_count},
        )
        self._advance_cursor(job, shop, report)
        self.pipelines.finish(execution, status=PipelineStatus.COMPLETED, meta={
            "processed_count": report.processed_count,
            "skipped_count": report.skipped_count,
            "failed_count": report.failed_count,
            "skip_reasons": report.skip_reasons,
            "variant_count": len(report.affected_ids),
            "last_change_time": report.last_change_time,
            "job_status": SnapshotJobStatus.PROCESSED.value,
        })
        self.failures.resolve(job.id)
        log_business_event(
            "snapshot_processed",
            "Снапшот обработан",
            shop_id=shop.id,
            job_id=job.job_id,
            processed=report.processed_count,
            skipped=report.skipped_count,
            failed=report.failed_count,
            variants=len(report.affected_ids),
        )

    def _advance_cursor(self, job: SnapshotJob, shop: Shop, report: SnapshotImportReport) -> None:
        raw = (job.meta or {}).get("cursor")
        if not raw:
            return
        target = CursorTarget.model_validate(raw)
        value = target.value
        if target.track_change_time and report.last_change_time:
            value = report.last_change_time

        meta = {"updated_at": utc_now_iso(), "job_id": job.job_id}
        if target.window is not None:
            meta["window"] = target.window.model_dump(by_alias=True)
        self.cursors.put(shop.id, target.key, value, meta)

    def _structural_failure(
        self,
        job: SnapshotJob,
        execution: PipelineExecution,
        execution_status: str,
        job_status: SnapshotJobStatus,
        message: str,
    ) -> SnapshotImportReport:
        logger.error(f"[SnapshotImport] {message} (задание {job.job_id}, магазин {job.shop_id})")
        self._update_job(job.id, status=job_status, meta={"error": message})
        self.pipelines.finish(execution, status=execution_status, meta={"error": message, "path": job.snapshot_path})
        self.failures.close_as_exhausted(job.id, message)
        return SnapshotImportReport(status=execution_status)

    def _update_job(
        self,
        snapshot_job_id: int,
        status: Optional[SnapshotJobStatus] = None,
        processed: bool = False,
        meta: Optional[dict] = None,
    ) -> None:
        with self.session_factory() as session:
            job = session.get(SnapshotJob, snapshot_job_id)
            if status is not None:
                job.status = status
            if processed:
                job.processed_at = datetime.utcnow()
            if meta:
                job.meta = merge_meta(job.meta, meta, schema=SnapshotJobMeta)
            job.updated_at = datetime.utcnow()
            session.add(job)
            session.commit()
