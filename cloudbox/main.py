"""
Cloudbox API - single-owner personal cloud server
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .config import get_settings, get_data_dir
from .database import init_db, close_db

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    print("Starting Cloudbox API...")

    await init_db()

    # Ensure the live data directory exists
    data_dir = get_data_dir()
    print(f"[Startup] Data directory: {data_dir}")

    yield

    # Shutdown
    print("\n" + "="*50)
    print("Shutting down Cloudbox API...")
    print("="*50)

    # Let a running transfer stop at its next checkpoint
    print("[Shutdown] Stopping device transfer...")
    from .transfer import transfer_supervisor
    await transfer_supervisor.shutdown()

    # Close database connections
    print("[Shutdown] Closing database connections...")
    await close_db()

    print("="*50)
    print("Cloudbox shutdown complete.")
    print("="*50 + "\n")


app = FastAPI(
    title="Cloudbox",
    description="Personal cloud server",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware - allow the desktop/web client on other origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers - all under /api prefix
from .routers import transfer

app.include_router(transfer.router, prefix="/api/transfer", tags=["Device Transfer"])


@app.get("/api")
async def api_root():
    return {
        "name": "Cloudbox",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "cloudbox.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
