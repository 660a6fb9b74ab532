"""API v1 router aggregator."""

from fastapi import APIRouter

from app.api.v1.account.routes import router as account_router
from app.api.v1.auth.routes import router as auth_router

api_router = APIRouter()

api_router.include_router(auth_router, prefix="/auth", tags=["Authentication"])
api_router.include_router(account_router, prefix="/account", tags=["Account"])
