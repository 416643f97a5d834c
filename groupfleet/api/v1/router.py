"""Main API router combining all v1 endpoints"""
from fastapi import APIRouter

from groupfleet.api.v1 import group_series, groups, monitoring

api_router = APIRouter()

# Include all routers
api_router.include_router(group_series.router, prefix="/group-series", tags=["Group Series"])
api_router.include_router(groups.router, prefix="/groups", tags=["Groups"])
api_router.include_router(monitoring.router, prefix="/monitoring", tags=["Monitoring"])
