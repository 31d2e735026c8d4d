class SnapshotPipelineError(Exception):
    """Базовое исключение конвейера снапшотов."""
    def __init__(self, message: str = "Ошибка конвейера снапшотов"):
        self.message = message
        super().__init__(self.message)


class ShoptetApiError(SnapshotPipelineError):
    """Ошибка транспорта или HTTP ответа платформы."""
    def __init__(self, message: str, status_code: int = None, payload: dict = None):
        self.status_code = status_code
        self.payload = payload or {}
        super().__init__(message)


class SnapshotRequestError(SnapshotPipelineError):
    """Платформа не вернула ID задания экспорта."""


class SnapshotDownloadError(SnapshotPipelineError):
    """Не удалось скачать результат экспорта."""


class InvalidSnapshotError(SnapshotPipelineError):
    """Файл снапшота повреждён или не является gzip."""


class PipelineExecutionFinishedError(SnapshotPipelineError):
    """Попытка изменить уже завершённый запуск конвейера."""


class RecordImportError(SnapshotPipelineError):
    """Ошибка уровня одной записи. Запись пропускается, обработка продолжается."""


class PipelineLockBusyError(SnapshotPipelineError):
    """Блокировка (магазин, конвейер) занята другим запуском, задание нужно отложить."""
