"""
Health check endpoint
"""

from datetime import UTC, datetime

from fastapi import APIRouter

router = APIRouter()


@router.get("/healthz", tags=["health"])
async def healthz():
    """
    Liveness probe

    Always 200 while the process is serving requests; does not touch Stripe
    or Supabase.
    """
    return {"ok": True, "timestamp": datetime.now(UTC).isoformat()}
