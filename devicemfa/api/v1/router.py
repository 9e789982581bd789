"""Main API router for v1 endpoints."""

from fastapi import APIRouter

from devicemfa.api.v1.endpoints import authentication, devices, enrollment

api_router = APIRouter()

# Include sub-routers
api_router.include_router(enrollment.router, prefix="/mfa", tags=["Enrollment"])
api_router.include_router(authentication.router, prefix="/auth", tags=["Authentication"])
api_router.include_router(devices.router, tags=["Devices"])
