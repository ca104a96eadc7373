"""
FastAPI application entry point.

Run with: uvicorn energy_indexer.api.main:app --host 0.0.0.0 --port 8000
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from energy_indexer import __version__
from energy_indexer.api.routes import listings, accounts, sync
from energy_indexer.api.dependencies import (
    get_sync_scheduler,
    initialize_services,
    shutdown_services,
)


# Create FastAPI app
app = FastAPI(
    title="Energy Marketplace Indexer API",
    description="Read API over the reconciled state of the energy trading marketplace",
    version=__version__
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    initialize_services()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the indexer and release the database on shutdown."""
    shutdown_services()


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Energy Marketplace Indexer API",
        "version": __version__,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    scheduler = get_sync_scheduler()
    if scheduler is None:
        return {"status": "healthy", "indexer": "disabled"}

    healthy = scheduler.status().healthy
    return {
        "status": "healthy" if healthy else "degraded",
        "indexer": "ok" if healthy else "failing",
    }


# Include routers
app.include_router(listings.router)
app.include_router(accounts.router)
app.include_router(sync.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
