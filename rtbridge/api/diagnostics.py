"""Diagnostics API for the feed pipeline."""

from fastapi import APIRouter

router = APIRouter(prefix="/api/diagnostics", tags=["diagnostics"])

# Will be set by main.py
orchestrator = None


@router.get("")
async def get_diagnostics():
    """Last cycle counters, tracked entities and route index cache sizes."""
    if orchestrator is None:
        return {"error": "Orchestrator not initialized"}
    return orchestrator.get_diagnostics()
