from fastapi import APIRouter
from consultpay.api.v1.routes.payments import router as payments_router
from consultpay.api.v1.routes.webhooks import router as webhooks_router
from consultpay.api.v1.routes.admin import router as admin_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(payments_router)
api_router.include_router(webhooks_router)
api_router.include_router(admin_router)
