import logging

from celery.signals import setup_logging

from app.utils.logging_config import setup_project_logging


@setup_logging.connect
def configure_celery_logging(**kwargs):
    # Настраиваем логирование для Celery worker и beat теми же хендлерами, что и приложение
    logger = setup_project_logging()

    celery_logger = logging.getLogger('celery')
    celery_beat_logger = logging.getLogger('celery.beat')
    celery_logger.handlers = logger.handlers
    celery_beat_logger.handlers = logger.handlers
