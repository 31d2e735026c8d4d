"""
 * @file: poller.py
 * @description: Опрос задания экспорта: одиночный опрос и прогрессивное ожидание результата
 * @dependencies: ShoptetClient, SnapshotJob, snapshot_sync_config
 * @created: 2026-01-02
"""
import logging
import time
from datetime import datetime
from typing import Callable, List, Optional

from sqlmodel import Session

from app.core.snapshot_sync_config import snapshot_sync_config
from app.models.shop import Shop
from app.models.snapshot_job import SnapshotJob, SnapshotJobStatus
from app.schemas.pipeline_meta import SnapshotJobMeta, merge_meta
from app.services.shoptet.client import ShoptetClient
from app.utils.date_utils import to_naive_utc, utc_now_iso

logger = logging.getLogger("snapshots.download")


def reschedule_delay(attempt: int, delays: Optional[List[int]] = None) -> int:
    """Задержка перед повторным опросом: 30, 60, 120, 240, 600, далее последняя."""
    delays = delays or snapshot_sync_config.reschedule_delays
    return delays[min(max(attempt, 1) - 1, len(delays) - 1)]


class SnapshotJobPoller:
    """
    Два режима ожидания результата экспорта:
    - одиночный опрос (повтор оформляется отложенной задачей);
    - прогрессивное ожидание: спим по фиксированной последовательности и
      опрашиваем после каждого сна, занимая воркер.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: ShoptetClient,
        sleep: Callable[[float], None] = time.sleep,
        wait_sequence: Optional[List[int]] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.sleep = sleep
        self.wait_sequence = wait_sequence if wait_sequence is not None else snapshot_sync_config.progressive_wait_sequence

    def poll_job_details(self, job: SnapshotJob, shop: Shop) -> SnapshotJob:
        """
        Подтягивает детали задания с платформы. Ошибка опроса не фатальна:
        задание возвращается как есть, следующий опрос попробует снова.
        """
        try:
            details = self.client.get_job(shop, job.job_id)
        except Exception as e:
            logger.warning(f"[SnapshotPoll] Не удалось получить детали задания {job.job_id}: {e}")
            return job

        with self.session_factory() as session:
            current = session.get(SnapshotJob, job.id)
            if current is None:
                return job
            if details.endpoint:
                current.endpoint = details.endpoint
            current.result_url = details.result_url or current.result_url
            if details.valid_until:
                current.valid_until = to_naive_utc(details.valid_until)
            current.meta = merge_meta(current.meta, {
                "job_status": details.status,
                "job_details": details.raw(),
            }, schema=SnapshotJobMeta)
            current.updated_at = datetime.utcnow()
            session.add(current)
            session.commit()
            session.refresh(current)
            return current

    def wait_progressively(self, job: SnapshotJob, shop: Shop) -> SnapshotJob:
        """Спит по последовательности (8, 10, 300 сек), возвращается, как только появился resultUrl."""
        for seconds in self.wait_sequence:
            if seconds > 0:
                self.sleep(seconds)
            job = self.poll_job_details(job, shop)
            if job.result_url:
                return job
        return job

    def prepare_for_download(self, job: SnapshotJob, shop: Shop, progressive_wait: bool) -> SnapshotJob:
        """
        Гарантирует, что у задания есть resultUrl и endpoint, либо переводит его в waiting_result.
        """
        if job.result_url and job.endpoint:
            return job

        if progressive_wait:
            job = self.wait_progressively(job, shop)
        else:
            job = self.poll_job_details(job, shop)

        if job.result_url:
            return job

        with self.session_factory() as session:
            current = session.get(SnapshotJob, job.id)
            current.status = SnapshotJobStatus.WAITING_RESULT
            current.meta = merge_meta(current.meta, {
                "last_poll_attempt_at": utc_now_iso(),
                "progressive_wait": progressive_wait,
            }, schema=SnapshotJobMeta)
            current.updated_at = datetime.utcnow()
            session.add(current)
            session.commit()
            session.refresh(current)
            return current
