"""
Health checks.

- liveness: the process answers (no dependencies checked)
- readiness: the database answers a trivial query
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from orderpay.core.logging import get_logger

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# no driver detail in the response
_ERROR_DB = "error: db_unavailable"


async def _check_db(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def check_readiness(db: AsyncSession) -> dict[str, str]:
    db_status = await _check_db(db)
    status = _STATUS_HEALTHY if db_status == _CHECK_OK else _STATUS_DEGRADED
    return {"status": status, "db": db_status}
