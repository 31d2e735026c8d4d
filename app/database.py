from sqlmodel import create_engine, Session
from sqlmodel import SQLModel
from sqlalchemy.orm import sessionmaker

from app.core.config import settings


def _engine_options(uri: str) -> dict:
    # SQLite (локальный запуск) не поддерживает настройки пула QueuePool
    if uri.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": 20,
        "max_overflow": 30,
        "pool_timeout": 60,
        "pool_recycle": 3600,  # Переиспользовать соединения через 1 час
    }


# Основной движок
engine = create_engine(
    settings.SQLALCHEMY_DATABASE_URI,
    echo=False,  # Отключаем SQL логирование для производительности
    **_engine_options(settings.SQLALCHEMY_DATABASE_URI)
)
SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def init_db() -> None:
    """Создаёт таблицы (для локального запуска без Alembic)."""
    import app.models  # noqa: F401
    SQLModel.metadata.create_all(engine)


# Dependency
def get_db():
    with Session(engine) as session:
        try:
            yield session
        finally:
            session.close()
