from fastapi import APIRouter
from app.api.endpoints import generate, health

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(generate.router)
api_router.include_router(health.router)
