import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from deps.settlement import build_engine
from middleware import RequestContextMiddleware
from routes.admin_ledger import router as admin_ledger_router
from routes.health import router as health_router
from routes.settlements import router as settlements_router
from routes.webhooks import router as webhooks_router
from services.observability import install_request_id_filter
from settings import settings, validate_env_settings

logger = logging.getLogger("marketsettle")


def create_app(engine=None) -> FastAPI:
    app = FastAPI(title="MarketSettle API", version="1.0.0")
    install_request_id_filter()

    for problem in validate_env_settings(settings):
        logger.warning("config_problem %s", problem)

    app.state.engine = engine if engine is not None else build_engine(settings)

    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(settlements_router)
    app.include_router(webhooks_router)
    app.include_router(admin_ledger_router)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error path=%s error=%s", request.url.path, type(exc).__name__)
        return JSONResponse(
            status_code=500,
            content={"detail": {"error": "INTERNAL_ERROR", "message": "Internal server error"}},
        )

    return app


app = create_app()
