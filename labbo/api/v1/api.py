# labbo/api/v1/api.py
from fastapi import APIRouter

from labbo.api.v1.endpoints import analytics, auth, borrowings, categories, equipment, notifications, users

api_router_v1 = APIRouter(prefix="/api/v1")

api_router_v1.include_router(auth.router, prefix="/auth")
api_router_v1.include_router(users.router, prefix="/users")
api_router_v1.include_router(categories.router, prefix="/categories")
api_router_v1.include_router(equipment.router, prefix="/equipment")
api_router_v1.include_router(borrowings.router, prefix="/borrowings")
api_router_v1.include_router(notifications.router, prefix="/notifications")
api_router_v1.include_router(analytics.router, prefix="/analytics")
