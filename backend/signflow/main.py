from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from signflow.api.routes import health, public_signatures, signing_requests
from signflow.core.config import settings
from signflow.core.logging_setup import logger
from signflow.db.session import init_db


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
    init_db()
    yield


def _normalize_origin(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().rstrip("/")
    return cleaned or None


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.project_name,
        debug=settings.debug,
        lifespan=lifespan,
    )

    raw_origins = settings.allowed_origins + [settings.resolved_public_app_url()]
    origins: list[str] = []
    for item in raw_origins:
        normalized = _normalize_origin(item)
        if normalized and normalized not in origins:
            origins.append(normalized)
    logger.info("CORS origins: %s", origins)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(health.router, prefix="/health")
    application.include_router(signing_requests.router, prefix=settings.api_v1_str)
    application.include_router(public_signatures.router, prefix="")

    @application.get("/")
    def root() -> dict[str, str]:
        return {"service": settings.project_name}

    return application


app = create_app()
