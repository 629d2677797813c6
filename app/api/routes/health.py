from __future__ import annotations

from fastapi import APIRouter

from app.core.rate_limit import EngineDep

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint.

    Returns a simple status response to verify the API is operational.
    Used by load balancers and monitoring systems to determine service health.

    Returns:
        dict: A dictionary with a single "status" key set to "ok".
    """

    return {"status": "ok"}


@router.get("/health/ready")
def readiness_check(engine: EngineDep) -> dict:
    """Readiness probe: the counter store must answer a read.

    An unreachable store surfaces as InfrastructureAppError (HTTP 503).
    """

    engine.probe_store()
    return {"status": "ready"}
