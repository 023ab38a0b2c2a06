from fastapi import FastAPI
from app.api import api_router
from app.services.notifier import notifier
from engine.services.run_submitter import RunSubmitter
from engine.services.runtime import init_runtime, shutdown_runtime
from release.tools.utils import get_logger

log = get_logger("api")

# Create the main FastAPI application instance
app = FastAPI(
    title="Convoy - Release Coordinator",
    description="Start release runs, follow their stages and resolve approval gates.",
    version="1.0.0",
)

# All routes from /api/__init__.py, e.g. /api/v1/runs/{run_id}/approvals
app.include_router(api_router, prefix="/api")


# --- Root Endpoint ---
@app.get("/", tags=["Health Check"])
async def root():
    """
    A simple health check endpoint to confirm the API is running.
    """
    return {
        "status": "ok",
        "message": "Welcome to the Convoy API"
    }


@app.on_event("startup")
async def startup_event():
    """
    Creates the run registry that owns every live run of this process.
    """
    init_runtime(RunSubmitter(notifier=notifier.send_run_finished))
    log.info("Run registry initialized.")


@app.on_event("shutdown")
async def shutdown_event():
    """
    Cancels live runs so no build process outlives the server.
    """
    shutdown_runtime()
    log.info("Shutdown complete.")
