"""
 * @file: snapshot_service.py
 * @description: Запрос снапшотов (товары, заказы, клиенты) и регистрация задания экспорта в конвейере
 * @dependencies: ShoptetClient, SnapshotPipelineService, SnapshotJob
 * @created: 2026-01-02
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlmodel import Session, select

from app.models.pipeline import PipelineStatus
from app.models.shop import Shop
from app.models.snapshot_job import SnapshotJob, SnapshotJobStatus
from app.schemas.pipeline_meta import CursorTarget, ExecutionMeta, SnapshotJobMeta, merge_meta
from app.services.pipeline.execution_tracker import SnapshotPipelineService
from app.services.shoptet.client import ShoptetClient
from app.services.snapshots.exceptions import ShoptetApiError
from app.utils.date_utils import utc_now_iso
from app.utils.logging_config import log_business_event

logger = logging.getLogger("snapshots.pipeline")

PRODUCTS_ENDPOINT = "/api/products/snapshot"
ORDERS_ENDPOINT = "/api/orders/snapshot"
CUSTOMERS_ENDPOINT = "/api/customers/snapshot"

DEFAULT_PRODUCT_INCLUDES = [
    "images",
    "variantParameters",
    "allCategories",
    "flags",
    "descriptiveParameters",
    "measureUnit",
    "surchargeParameters",
    "setItems",
    "filteringParameters",
    "recyclingFee",
    "consumptionTax",
    "warranty",
    "sortVariants",
    "gifts",
    "alternativeProducts",
    "relatedProducts",
    "relatedVideos",
    "relatedFiles",
    "perStockAmounts",
    "perPricelistPrices",
]

DEFAULT_ORDER_INCLUDES = ["shippingDetails"]


def split_includes(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in str(value).split(",") if item.strip()]


def merge_includes(requested: List[str], defaults: List[str]) -> List[str]:
    """Запрошенные include первыми, затем значения по умолчанию, без повторов."""
    merged: List[str] = []
    for item in requested + defaults:
        if item not in merged:
            merged.append(item)
    return merged


def filter_unsupported_includes(includes: List[str], response: Optional[Dict[str, Any]]) -> List[str]:
    """
    Убирает include, которые платформа отклонила в ответе 403
    («<name> include» или «<name> module» в тексте ошибки).
    """
    if not response:
        return includes

    messages = [
        str(error.get("message", "")).lower()
        for error in (response.get("errors") or [])
        if isinstance(error, dict) and error.get("message")
    ]
    if not messages:
        return includes

    def unsupported(include: str) -> bool:
        needles = (f"{include} include".lower(), f"{include} module".lower())
        return any(needle in message for message in messages for needle in needles)

    return [include for include in includes if not unsupported(include)]


class SnapshotService:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: ShoptetClient,
        pipelines: SnapshotPipelineService,
    ):
        self.session_factory = session_factory
        self.client = client
        self.pipelines = pipelines

    def request_products_snapshot(self, shop: Shop, params: Optional[Dict[str, Any]] = None, **kwargs) -> SnapshotJob:
        params = dict(params or {})
        includes = merge_includes(split_includes(params.get("include")), DEFAULT_PRODUCT_INCLUDES)
        return self._request_products_with_includes(shop, params, includes, **kwargs)

    def request_orders_snapshot(self, shop: Shop, params: Optional[Dict[str, Any]] = None, **kwargs) -> SnapshotJob:
        params = dict(params or {})
        params["include"] = ",".join(merge_includes(split_includes(params.get("include")), DEFAULT_ORDER_INCLUDES))
        return self.request_snapshot(shop, ORDERS_ENDPOINT, params, **kwargs)

    def request_customers_snapshot(self, shop: Shop, params: Optional[Dict[str, Any]] = None, **kwargs) -> SnapshotJob:
        return self.request_snapshot(shop, CUSTOMERS_ENDPOINT, params, **kwargs)

    def request_export(self, shop: Shop, kind: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> SnapshotJob:
        """Запрос экспорта по типу: products, orders, customers."""
        handlers = {
            "products": self.request_products_snapshot,
            "orders": self.request_orders_snapshot,
            "customers": self.request_customers_snapshot,
        }
        if kind not in handlers:
            raise ValueError(f"Неизвестный тип снапшота: {kind}")
        return handlers[kind](shop, params, **kwargs)

    def _request_products_with_includes(self, shop: Shop, params: Dict[str, Any], includes: List[str], **kwargs) -> SnapshotJob:
        params_with_includes = dict(params)
        params_with_includes["include"] = ",".join(includes)
        try:
            return self.request_snapshot(shop, PRODUCTS_ENDPOINT, params_with_includes, **kwargs)
        except ShoptetApiError as e:
            if e.status_code != 403:
                raise

            reduced = filter_unsupported_includes(includes, e.payload)
            if len(reduced) == len(includes):
                raise

            logger.warning(
                f"[Snapshots] Повтор запроса снапшота товаров без неподдерживаемых include: "
                f"shop={shop.id} removed={[i for i in includes if i not in reduced]}"
            )
            return self._request_products_with_includes(shop, params, reduced, **kwargs)

    def request_snapshot(
        self,
        shop: Shop,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        pipeline_key: Optional[str] = None,
        schedule_id: Optional[str] = None,
        cursor: Optional[CursorTarget] = None,
        execution_meta: Optional[ExecutionMeta] = None,
    ) -> SnapshotJob:
        """
        Запрашивает экспорт и создаёт/обновляет задание (магазин, job_id).
        Для нового задания создаётся запуск конвейера в статусе queued.

        Args:
            shop: Магазин
            endpoint: Путь снапшота на платформе
            params: Параметры запроса (пустые значения отбрасываются)
            pipeline_key: Ключ конвейера (по умолчанию endpoint)
            schedule_id: Расписание, запустившее запрос
            cursor: Курсор, который продвигается после успешной обработки
            execution_meta: Дополнительные метаданные запуска (окно и т.п.)
        """
        filtered = {k: v for k, v in (params or {}).items() if v is not None and v != ""}
        job_id = self.client.request_snapshot(shop, endpoint, filtered)

        with self.session_factory() as session:
            job = session.exec(
                select(SnapshotJob).where(SnapshotJob.shop_id == shop.id, SnapshotJob.job_id == job_id)
            ).first()
            if job is None:
                job = SnapshotJob(shop_id=shop.id, job_id=job_id)

            job.event = "job:requested"
            job.status = SnapshotJobStatus.REQUESTED
            job.endpoint = endpoint
            job_meta: Dict[str, Any] = {"requested_at": utc_now_iso(), "params": filtered}
            if schedule_id:
                job_meta["schedule_id"] = schedule_id
            if cursor is not None:
                job_meta["cursor"] = cursor.model_dump(by_alias=True, mode="json")
            job.meta = merge_meta(job.meta, job_meta, schema=SnapshotJobMeta)
            if not job.payload:
                job.payload = {"type": "snapshot_request", "params": filtered}
            job.updated_at = datetime.utcnow()
            session.add(job)
            session.commit()
            session.refresh(job)

            if not job.pipeline_id:
                meta = _as_set_fields(execution_meta) if execution_meta else {}
                meta.update({"params": filtered, "job_id": job_id})
                if schedule_id:
                    meta["schedule_id"] = schedule_id
                execution = self.pipelines.start(
                    shop.id,
                    pipeline_key or endpoint,
                    meta,
                    requested_at=datetime.utcnow(),
                    status=PipelineStatus.QUEUED,
                    started=False,
                )
                job.meta = merge_meta(job.meta, {"pipeline_id": str(execution.id)}, schema=SnapshotJobMeta)
                session.add(job)
                session.commit()
                session.refresh(job)

        log_business_event(
            "snapshot_requested",
            "Запрошен снапшот",
            shop_id=shop.id,
            job_id=job.job_id,
            endpoint=endpoint,
            pipeline_id=job.pipeline_id,
        )
        return job


def _as_set_fields(meta: ExecutionMeta) -> Dict[str, Any]:
    """Только заполненные поля, чтобы None не затирал метаданные при слиянии."""
    return meta.model_dump(by_alias=True, exclude_none=True, mode="json")
