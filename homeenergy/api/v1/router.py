from fastapi import APIRouter

from homeenergy.api.v1.endpoints import consumption, system

api_v1_router = APIRouter()

# System / health endpoints (status, consumer states)
api_v1_router.include_router(system.router, tags=["System"])

# Hourly consumption read query
api_v1_router.include_router(consumption.router, tags=["Consumption"])
