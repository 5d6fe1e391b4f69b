"""V1 API router aggregation."""

from fastapi import APIRouter

from tenancy.api.v1.runs import router as runs_router
from tenancy.api.v1.system import router as system_router
from tenancy.api.v1.tenants import router as tenants_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(runs_router)
v1_router.include_router(tenants_router)
v1_router.include_router(system_router)
