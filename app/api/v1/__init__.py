from fastapi import APIRouter
from app.api.v1.endpoints import auth, runs

# Create the main router for API version 1
api_router_v1 = APIRouter()

# Include the authentication router
api_router_v1.include_router(
    auth.router,
    prefix="/auth",
    tags=["Authentication"]
)

# Include the run management router
api_router_v1.include_router(
    runs.router,
    prefix="/runs",
    tags=["Run Management"]
)
