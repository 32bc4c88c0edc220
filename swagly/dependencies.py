"""
FastAPI dependencies for the Swagly proof review service
"""
from typing import Generator, Optional
from fastapi import Depends, HTTPException, Header, Request, status
from sqlalchemy.orm import Session

from swagly.config import settings
from swagly.db.database import Database
from swagly.services.approval_service import ApprovalService, approval_service


def get_database(request: Request) -> Database:
    """Storage handle opened by the application lifespan"""
    return request.app.state.db


def get_db(database: Database = Depends(get_database)) -> Generator[Session, None, None]:
    """Get database session"""
    db = database.session()
    try:
        yield db
    finally:
        db.close()


def get_approval_service() -> ApprovalService:
    return approval_service


def verify_admin_key(x_api_key: Optional[str] = Header(None)) -> str:
    """Verify API key for admin endpoints"""
    if not x_api_key or x_api_key != settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
    return x_api_key
