from sqlmodel import Session, SQLModel, create_engine

from iris_api.core.config import settings
import iris_api.models  # noqa: F401  # ensure model metadata is registered


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)


def init_db() -> None:
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
