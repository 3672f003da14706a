"""Root and health endpoints."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from family_finance import __version__
from family_finance.config import settings
from family_finance.database import db_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.managers.security_manager import rate_limit

logger = get_logger(prefix="[Health]")

router = APIRouter(tags=["System"])


@router.get("/", dependencies=[Depends(rate_limit("public"))])
async def root():
    return {"name": settings.APP_NAME, "version": __version__, "status": "running"}


@router.get("/health")
async def health_check():
    """
    Report database connectivity.

    Returns 200 with ``status: ok`` when MongoDB answers a ping, otherwise 503 with
    ``status: degraded``.
    """
    database_ok = await db_manager.health_check()
    body = {"status": "ok" if database_ok else "degraded", "database": "connected" if database_ok else "unavailable"}
    if not database_ok:
        logger.warning("Health check degraded: database unavailable")
        return JSONResponse(status_code=503, content=body)
    return body
