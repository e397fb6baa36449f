"""API v1 router composition."""

from fastapi import APIRouter

from evidence_vault.api.v1.endpoints import admin_orders, auth, manual_sales, my_downloads, redeem, webhooks

api_router: APIRouter = APIRouter()
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(redeem.router, prefix="/redeem", tags=["redeem"])
api_router.include_router(my_downloads.router, prefix="/my-downloads", tags=["downloads"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(admin_orders.router, prefix="/admin/orders", tags=["admin"])
api_router.include_router(manual_sales.router, prefix="/admin/manual-sales", tags=["admin"])
