"""
 * @file: storage.py
 * @description: Долговременное хранилище снапшотов на локальном диске (put потоком, delete, path)
 * @dependencies: os, shutil, settings
 * @created: 2026-01-02
"""
import os
import re
import shutil
from typing import BinaryIO, Optional
from urllib.parse import urlparse

from app.core.config import settings


def sanitize_file_name(name: str) -> str:
    """Оставляет только [A-Za-z0-9_.-], остальное заменяет на _, обрезает точки и _ по краям."""
    return re.sub(r"[^A-Za-z0-9_.\-]", "_", name).strip("._")


def build_snapshot_file_name(result_url: str, job_id: str) -> str:
    name = os.path.basename(urlparse(result_url).path or "")
    return sanitize_file_name(name or f"job-{job_id}.gz") or sanitize_file_name(f"job-{job_id}.gz")


def build_snapshot_path(shop_id: int, result_url: str, job_id: str) -> str:
    """Детерминированный путь снапшота внутри хранилища магазина."""
    return f"shoptet/{shop_id}/snapshots/{build_snapshot_file_name(result_url, job_id)}"


class SnapshotStorage:
    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(root or settings.SNAPSHOT_STORAGE_ROOT)

    def path(self, relative_path: str) -> str:
        """Абсолютный путь файла (для чтения gzip потоком)."""
        full = os.path.abspath(os.path.join(self.root, relative_path))
        if not full.startswith(self.root + os.sep):
            raise ValueError(f"Путь {relative_path} выходит за пределы хранилища")
        return full

    def put(self, relative_path: str, stream: BinaryIO) -> str:
        """Копирует поток в хранилище блоками, через временный файл рядом с целевым."""
        target = self.path(relative_path)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        partial = f"{target}.part"
        try:
            with open(partial, "wb") as destination:
                shutil.copyfileobj(stream, destination, length=1024 * 1024)
            os.replace(partial, target)
        finally:
            if os.path.exists(partial):
                os.unlink(partial)
        return relative_path

    def exists(self, relative_path: str) -> bool:
        return os.path.isfile(self.path(relative_path))

    def delete(self, relative_path: str) -> None:
        target = self.path(relative_path)
        if os.path.exists(target):
            os.unlink(target)
