from fastapi import APIRouter

from processaudit.api.v1 import integrations, webhooks


api_router = APIRouter()
api_router.include_router(webhooks.router)
api_router.include_router(integrations.router)
