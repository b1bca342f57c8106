
from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .database import engine
from .errors import (
    AppError,
    app_error_handler,
    http_exception_handler,
    validation_exception_handler,
    unhandled_exception_handler,
)
from .middleware_request_id import RequestIDMiddleware, install_request_logging
from .models import Base
from .routers import rides as rides_router
from .routers import drivers as drivers_router
from .routers import fare_settings as fare_settings_router
from .routers import commission_settings as commission_settings_router
from .routers import due_requests as due_requests_router
from .routers import ledger as ledger_router
from .routers import ws as ws_router


def create_app() -> FastAPI:
    install_request_logging(settings.LOG_LEVEL)
    app = FastAPI(title="Dispatch Ledger API", version="0.1.0")

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # request id and HTTP metrics
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.execute(text("select 1"))
        return {"status": "ok", "env": settings.ENV}

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(rides_router.router)
    app.include_router(drivers_router.router)
    app.include_router(fare_settings_router.router)
    app.include_router(commission_settings_router.router)
    app.include_router(due_requests_router.router)
    app.include_router(ledger_router.router)
    app.include_router(ws_router.router)
    return app


app = create_app()


def run():
    import uvicorn

    uvicorn.run("dispatch_ledger.main:app", host=settings.APP_HOST, port=settings.APP_PORT)


if __name__ == "__main__":
    run()
