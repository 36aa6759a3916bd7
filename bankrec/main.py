from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bankrec.api.reconcile import router as reconcile_router
from bankrec.api.rules import router as rules_router
from bankrec.config import settings
from bankrec.db.init_db import init_db
from bankrec.graphql.schema import graphql_router
from bankrec.services.errors import ReconciliationError

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(level, "%s %s failed: %s", request.method, request.url.path, exc.message, extra={"code": exc.code})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    configure_logging()
    init_db()
    app = FastAPI(title="Bank Reconciliation API")

    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)

    app.include_router(reconcile_router)
    app.include_router(rules_router)

    app.include_router(graphql_router, prefix="/graphql")
    return app


app = create_app()
