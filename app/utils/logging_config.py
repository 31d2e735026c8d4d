"""
 * @file: logging_config.py
 * @description: Конфигурация логирования для всего проекта с фильтрацией технических логов
 * @dependencies: logging, os, RotatingFileHandler
 * @created: 2024-12-20
 * @updated: 2026-01-02
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Union

# Создаём директорию для логов, если её нет
LOG_PATH = os.path.join(os.getcwd(), "logs")
os.makedirs(LOG_PATH, exist_ok=True)

# Переменные окружения для управления логированием
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENABLE_SQL_LOGS = os.getenv("ENABLE_SQL_LOGS", "false").lower() == "true"

TECHNICAL_LOGGER_PREFIXES = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "sqlalchemy.dialects",
    "sqlalchemy.orm",
    "urllib3",
    "httpx",
    "httpcore",
    "asyncio",
    "uvicorn",
    "celery.worker",
    "celery.beat",
    "celery.app",
    "kombu",
    "redis",
    "psycopg",
)

# Логгеры бизнес-логики конвейера
BUSINESS_LOGGERS = (
    "snapshots.pipeline",
    "snapshots.download",
    "snapshots.import",
    "snapshots.retry",
    "schedules",
    "shoptet.api",
    "webhooks",
    "business",
    "errors",
)


class BusinessLogicFilter(logging.Filter):
    """
    Фильтр для отображения только бизнес-логики, исключая технические детали
    """
    def filter(self, record):
        if record.name.startswith(TECHNICAL_LOGGER_PREFIXES):
            return False

        # Исключаем сообщения с SQL запросами
        if hasattr(record, 'msg') and isinstance(record.msg, str):
            if 'SELECT' in record.msg and 'FROM' in record.msg:
                return False
            if 'INSERT' in record.msg and 'INTO' in record.msg:
                return False
            if 'BEGIN' in record.msg or 'COMMIT' in record.msg or 'ROLLBACK' in record.msg:
                return False

        return True


class ColoredFormatter(logging.Formatter):
    """
    Форматтер с цветным выводом для консоли
    """
    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
        'RESET': '\033[0m'      # Reset
    }

    def format(self, record):
        if hasattr(record, 'use_color') and record.use_color:
            color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
            reset = self.COLORS['RESET']
            record.levelname = f"{color}{record.levelname}{reset}"
            record.name = f"{color}{record.name}{reset}"

        return super().format(record)


def setup_project_logging(log_level: str = None, enable_sql_logs: bool = None):
    """
    Настраивает логирование для всего проекта.

    Args:
        log_level: Уровень логирования (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_sql_logs: Включить логи SQL запросов (для отладки)
    """
    if log_level is None:
        log_level = LOG_LEVEL
    if enable_sql_logs is None:
        enable_sql_logs = ENABLE_SQL_LOGS

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    # Очищаем все существующие хендлеры
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_formatter = ColoredFormatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S'
    )
    file_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(numeric_level)
    if not enable_sql_logs:
        console_handler.addFilter(BusinessLogicFilter())

    file_handler = RotatingFileHandler(
        os.path.join(LOG_PATH, "app.log"),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(file_formatter)
    file_handler.setLevel(logging.DEBUG)

    error_handler = RotatingFileHandler(
        os.path.join(LOG_PATH, "errors.log"),
        maxBytes=5*1024*1024,  # 5MB
        backupCount=3,
        encoding='utf-8'
    )
    error_handler.setFormatter(file_formatter)
    error_handler.setLevel(logging.ERROR)

    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(error_handler)

    for logger_name in TECHNICAL_LOGGER_PREFIXES:
        module_logger = logging.getLogger(logger_name)
        module_logger.setLevel(logging.WARNING if enable_sql_logs else logging.ERROR)
        module_logger.propagate = False

    app_logger = logging.getLogger("app")
    app_logger.setLevel(logging.DEBUG)
    app_logger.propagate = False
    app_logger.addHandler(console_handler)
    app_logger.addHandler(file_handler)
    app_logger.addHandler(error_handler)

    # Логгеры бизнес-логики пишут во все хендлеры, но продолжают всплывать
    # к корню: иначе pytest caplog их не видит
    for logger_name in BUSINESS_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.DEBUG)

    return app_logger


def get_logger(name: str) -> logging.Logger:
    """
    Получить логгер с правильным именем для бизнес-логики

    Args:
        name: Имя логгера

    Returns:
        logging.Logger: Настроенный логгер
    """
    return logging.getLogger(name)


def _format_context(kwargs: dict) -> str:
    return " | ".join([f"{k}={v}" for k, v in kwargs.items() if v is not None])


def log_business_event(event_type: str, message: str, **kwargs):
    """
    Логирует бизнес-событие в удобном формате

    Args:
        event_type: Тип события (snapshot_requested, pipeline_finished, etc.)
        message: Сообщение о событии
        **kwargs: Контекст (shop_id, job_id, stage, execution_id ...)
    """
    logger = get_logger("business")
    extra_info = _format_context(kwargs)
    if extra_info:
        logger.info(f"[{event_type.upper()}] {message} | {extra_info}")
    else:
        logger.info(f"[{event_type.upper()}] {message}")


def log_error_with_context(error: Exception, context: Union[str, Dict[str, Any]] = "", **kwargs):
    """
    Логирует ошибку с контекстом

    Args:
        error: Исключение
        context: Контекст ошибки (строка или словарь operation/shop_id/job_id ...)
        **kwargs: Дополнительные параметры
    """
    logger = get_logger("errors")
    if isinstance(context, dict):
        kwargs = {**context, **kwargs}
        context = str(kwargs.pop("operation", ""))
    extra_info = _format_context(kwargs)
    if context:
        logger.error(f"[ERROR] {context}: {str(error)} | {extra_info}")
    else:
        logger.error(f"[ERROR] {str(error)} | {extra_info}")
