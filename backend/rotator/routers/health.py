"""Health check router."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "ok",
        "service": "coin-rotator",
        "version": "1.0.0",
        "running_bots": len(scheduler.registry.running_bot_ids()) if scheduler else 0,
    }
