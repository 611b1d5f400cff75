from fastapi import APIRouter

from iris_api.api.endpoints.analytics import router as analytics_router
from iris_api.api.endpoints.answer import router as answer_router
from iris_api.api.endpoints.cache_admin import router as cache_admin_router

api_router = APIRouter()
api_router.include_router(answer_router)
api_router.include_router(cache_admin_router)
api_router.include_router(analytics_router)
