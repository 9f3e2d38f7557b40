from typing import Any, Generator

from sqlmodel import Session, SQLModel, create_engine

from signflow.core.config import settings
from signflow.core.logging_setup import logger
from signflow.db import base  # noqa: F401
from signflow.db.immutability import register_immutability_listeners

connect_args: dict[str, Any] = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
    connect_args=connect_args,
)

register_immutability_listeners()


def init_db() -> None:
    SQLModel.metadata.create_all(bind=engine)
    logger.info("Database schema ready (%s)", engine.url.render_as_string(hide_password=True))


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
