"""API v1 router aggregator."""

from fastapi import APIRouter

from app.api.v1.callback.routes import router as callback_router
from app.api.v1.submissions.routes import router as submissions_router

api_router = APIRouter()

api_router.include_router(submissions_router, tags=["Submissions"])
api_router.include_router(callback_router, tags=["Callbacks"])
