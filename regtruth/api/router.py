from fastapi import APIRouter

from regtruth.api.routes import admin, commands, health, rules

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(rules.router, tags=["status"])
api_router.include_router(commands.router, prefix="/commands", tags=["operator"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
