"""
 * @file: celery_shared.py
 * @description: Общие объекты Celery для использования в других модулях
 * @dependencies: core.config, database
 * @created: 2024-12-20
 * @updated: 2026-01-02
"""

import os
from dotenv import load_dotenv
from celery import Celery

# Загружаем переменные окружения перед импортом config
load_dotenv()

# Проверяем, запущено ли приложение в Docker
is_docker = os.path.exists("/.dockerenv") or os.path.exists("/run/.containerenv")

# Если запущено в Docker, перезагружаем переменные из .env.docker
if is_docker:
    load_dotenv(".env.docker", override=True)

from app.core.config import settings
from app.database import SessionLocal  # noqa: F401

# Инициализация Celery
celery = Celery(
    "shop_snapshot_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "app.services.snapshot_tasks",
        "app.services.schedule_tasks",
    ]
)

# Настройка Celery
celery.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    worker_hijack_root_logger=False,  # Отключаем перехват root логгера
    worker_log_format='[%(asctime)s: %(levelname)s/%(processName)s] %(message)s',
    worker_task_log_format='[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s',
    broker_connection_retry_on_startup=True,
    task_default_queue="snapshots",
    task_routes={
        "app.services.snapshot_tasks.*": {"queue": "snapshots"},
        "app.services.schedule_tasks.*": {"queue": "orders"},
    },
    # Задача не подтверждается до завершения: упавший воркер не теряет скачивание
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# Лимиты времени для коротких задач. Скачивание и обработка снапшотов
# выполняются без лимита: размер экспорта заранее неизвестен
SHORT_TASK_LIMITS = {"soft_time_limit": 600, "time_limit": 900}
