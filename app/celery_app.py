"""
 * @file: celery_app.py
 * @description: Точка входа Celery worker/beat: регистрация задач и периодическое расписание
 * @dependencies: celery_shared, celery_logging, snapshot_tasks, schedule_tasks
 * @created: 2024-12-20
 * @updated: 2026-01-02
"""
from app.celery_shared import celery
from app import celery_logging  # noqa: F401  подключает обработчик сигнала setup_logging

# Импортируем модули с задачами, чтобы они зарегистрировались в Celery
from app.services import schedule_tasks, snapshot_tasks  # noqa: F401

# Настройки celery импортированы из celery_shared.py

DEFAULT_BEAT_SCHEDULE = {
    # Проверка расписаний JobSchedule, сами расписания задаются cron в БД
    'run-due-job-schedules': {
        'task': 'app.services.schedule_tasks.run_due_job_schedules',
        'schedule': 60,  # 1 минута
    },
    'retry-failed-snapshots': {
        'task': 'app.services.snapshot_tasks.retry_failed_snapshots',
        'schedule': 600,  # 10 минут
    },
    'poll-snapshot-jobs': {
        'task': 'app.services.snapshot_tasks.poll_snapshot_jobs',
        'schedule': 300,  # 5 минут
    },
}

celery.conf.beat_schedule = DEFAULT_BEAT_SCHEDULE
