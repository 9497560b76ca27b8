import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from toolcustody.config import Settings, get_settings
from toolcustody.local_state import LocalState
from toolcustody.routers import assistant, auth, reports, tools, users
from toolcustody.services.bootstrap import bootstrap
from toolcustody.store import RemoteStore
from toolcustody.workspace import Workspace

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, store: Optional[RemoteStore] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    workspace = Workspace(
        settings=settings,
        store=store or RemoteStore.from_settings(settings),
        local=LocalState(settings.local_state_path),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        bootstrap(app.state.workspace)  # 启动阶段：远端 / 默认数据 / 记住的会话
        yield
        app.state.workspace.store.dispose()
        logger.info("service stopped")

    app = FastAPI(title="Tool Custody", lifespan=lifespan)
    app.state.workspace = workspace

    app.include_router(auth.router)
    app.include_router(tools.router)
    app.include_router(users.router)
    app.include_router(reports.router)
    app.include_router(assistant.router)

    @app.get("/health")
    def health(request: Request):
        ws: Workspace = request.app.state.workspace
        return {
            "ok": True,
            "store": "remote" if ws.store.configured else "local",
            "syncing": ws.syncing,
        }

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "errors": jsonable_encoder(exc.errors()),
            },
        )

    return app


app = create_app()
