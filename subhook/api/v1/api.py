"""
API v1 Router
Aggregates all API endpoints.
"""
from fastapi import APIRouter

from subhook.api.v1.endpoints import subscriptions, webhooks

api_router = APIRouter()


@api_router.get("/ping", tags=["Health"])
async def ping():
    """Simple ping endpoint to verify API is responding"""
    return {"message": "pong", "api_version": "v1"}


api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])
