"""
 * @file: client.py
 * @description: HTTP клиент Shoptet API: запрос снапшота, детали задания, потоковое скачивание результата
 * @dependencies: httpx, Shop, settings
 * @created: 2026-01-02
"""
import logging
import os
import tempfile
import time
from typing import Any, Dict, Optional

import httpx

from app.core.config import settings
from app.models.shop import Shop
from app.schemas.shoptet_models import ShoptetJobDetails
from app.services.snapshots.exceptions import ShoptetApiError, SnapshotRequestError

logger = logging.getLogger("shoptet.api")

JOB_ID_PATHS = (
    ("jobId",),
    ("data", "jobId"),
    ("job", "jobId"),
    ("job", "id"),
    ("id",),
)


def dig(data: Any, *path: str) -> Any:
    """Безопасно достаёт вложенное значение словаря по пути."""
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


class ShoptetClient:
    """
    Клиент платформы. Поддерживает три операции конвейера: запросить экспорт,
    получить детали задания и скачать результат потоком во временный файл.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        download_timeout: Optional[float] = None,
        retry_times: Optional[int] = None,
        retry_sleep: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.SHOPTET_API_URL).rstrip("/")
        self.timeout = timeout or settings.SHOPTET_TIMEOUT
        # None - без ограничения времени чтения: размер экспорта заранее неизвестен
        self.download_timeout = download_timeout if download_timeout is not None else settings.SHOPTET_DOWNLOAD_TIMEOUT
        self.retry_times = settings.SHOPTET_RETRY_TIMES if retry_times is None else retry_times
        self.retry_sleep = settings.SHOPTET_RETRY_SLEEP if retry_sleep is None else retry_sleep
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
        )

    def _get_headers(self, shop: Shop) -> Dict[str, str]:
        """Формирует заголовки для запросов к API."""
        if not shop.api_token:
            raise ShoptetApiError(f"Для магазина {shop.id} не настроен API токен")
        header = "Shoptet-Private-API-Token" if shop.api_mode in ("premium", "private") else "Shoptet-Access-Token"
        return {
            header: shop.api_token,
            "Content-Type": "application/vnd.shoptet.v1.0",
            "Accept": "application/json",
        }

    def _request(self, shop: Shop, method: str, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self.client.request(method, url, params=params, headers=self._get_headers(shop))
                if response.status_code == 429 and attempt <= self.retry_times:
                    logger.warning(f"[Shoptet] 429 для {url}, повтор {attempt}/{self.retry_times}")
                    time.sleep(self.retry_sleep)
                    continue
                response.raise_for_status()
            except httpx.TransportError as e:
                if attempt <= self.retry_times:
                    logger.warning(f"[Shoptet] Сетевая ошибка для {url}: {e}, повтор {attempt}/{self.retry_times}")
                    time.sleep(self.retry_sleep)
                    continue
                raise ShoptetApiError(f"Сетевая ошибка Shoptet API: {e}") from e
            except httpx.HTTPStatusError as e:
                payload = self._safe_json(e.response)
                raise ShoptetApiError(
                    f"Shoptet API вернул {e.response.status_code} для {url}",
                    status_code=e.response.status_code,
                    payload=payload,
                ) from e

            return self._safe_json(response)

    @staticmethod
    def _safe_json(response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}

    def request_snapshot(self, shop: Shop, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Просит платформу подготовить экспорт.

        Returns:
            str: Внешний ID задания
        """
        data = self._request(shop, "GET", endpoint, params=params or {})

        job_id = None
        for path in JOB_ID_PATHS:
            value = dig(data, *path)
            if value not in (None, ""):
                job_id = str(value)
                break

        if not job_id:
            logger.error(f"[Shoptet] Ответ на запрос снапшота без jobId: shop={shop.id} endpoint={endpoint} response={data}")
            raise SnapshotRequestError("Shoptet не вернул jobId на запрос снапшота")

        logger.info(f"[Shoptet] Запрошен снапшот {endpoint} для магазина {shop.id}: job={job_id}")
        return job_id

    def get_job(self, shop: Shop, job_id: str) -> ShoptetJobDetails:
        """Детали задания экспорта: endpoint, resultUrl, validUntil, status."""
        data = self._request(shop, "GET", f"/api/system/jobs/{job_id}")
        details = dig(data, "job") or dig(data, "data", "job") or data
        return ShoptetJobDetails.model_validate(details)

    def download_job_result(self, shop: Shop, url: str) -> str:
        """
        Скачивает результат экспорта потоком во временный файл, не держа его в памяти.
        Временный файл удаляет вызывающий.

        Returns:
            str: Путь к временному файлу
        """
        fd, temp_path = tempfile.mkstemp(prefix="shoptet_snapshot_")
        timeout = httpx.Timeout(self.download_timeout, connect=30.0)
        try:
            with os.fdopen(fd, "wb") as sink:
                with self.client.stream("GET", url, headers=self._get_headers(shop), timeout=timeout) as response:
                    response.raise_for_status()
                    for chunk in response.iter_bytes(chunk_size=1024 * 1024):
                        sink.write(chunk)
        except httpx.HTTPError as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise ShoptetApiError(f"Не удалось скачать результат задания: {e}") from e
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

        return temp_path

    def close(self) -> None:
        self.client.close()
