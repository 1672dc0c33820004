from fastapi import APIRouter

from pourline.api.routes import health, orders, redemption, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(redemption.router, tags=["redemption"])
api_router.include_router(webhooks.router, tags=["webhooks"])
