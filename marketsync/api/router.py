"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from marketsync.api.jobs import router as jobs_router
from marketsync.api.commands import router as commands_router
from marketsync.api.webhooks import router as webhooks_router
from marketsync.api.claims import router as claims_router
from marketsync.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(jobs_router)
api_router.include_router(commands_router)
api_router.include_router(webhooks_router)
api_router.include_router(claims_router)
api_router.include_router(health_router)
