from fastapi import APIRouter

from quotasync.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    return {"status": "healthy", "service": "quotasync-api", "version": settings.app_version}


@router.get("/")
async def root():
    """Root endpoint with API information."""
    return {"message": f"Welcome to {settings.app_name}", "docs": "/docs", "health": "/health"}
