"""
System Router - Health checks
"""
import logging
from datetime import datetime
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from swagly.config import settings
from swagly.db.database import Database
from swagly.dependencies import get_database

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
def health_check(database: Database = Depends(get_database)):
    """Database reachability and claim gateway configuration"""
    database_status = "healthy"
    try:
        database.ping()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_status = "unhealthy"

    gateway_configured = bool(settings.THIRDWEB_SECRET_KEY.strip()) and \
        "<YOUR" not in settings.CREATOR_WALLET_ADDRESS

    body = {
        "service": "swagly",
        "database": database_status,
        "claim_gateway": "configured" if gateway_configured else "not_configured",
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }
    return JSONResponse(status_code=200 if database_status == "healthy" else 503, content=body)
