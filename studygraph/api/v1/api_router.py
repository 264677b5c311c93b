from fastapi import APIRouter

from studygraph.api.v1.routers.subjects import router as subjects_router

v1_router = APIRouter(prefix="/api/v1")

v1_router.include_router(subjects_router)
