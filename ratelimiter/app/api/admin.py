"""Administrative endpoints: limiter status, reset, and cluster view."""

import hmac
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.services.node_liveness import NodeLivenessTracker
from ratelimiter.app.services.rate_limiter import RateLimitEngine, StatusError

logger = get_logger(__name__)


def get_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:].strip()
    return None


def require_admin(request: Request) -> None:
    """Validate the admin token for protected endpoints.

    Raises:
        HTTPException: 503 if no admin token is configured,
            401 if the token is missing or invalid
    """
    expected_token = settings.admin_token.strip()
    if not expected_token:
        raise HTTPException(status_code=503, detail="Admin API disabled")

    token = get_bearer_token(request) or ""
    if not hmac.compare_digest(token, expected_token):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")


def get_engine(request: Request) -> RateLimitEngine:
    engine = getattr(request.app.state, "rate_limiter", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Rate limiter not initialised")
    return engine


def get_tracker(request: Request) -> NodeLivenessTracker:
    tracker = getattr(request.app.state, "liveness", None)
    if tracker is None:
        raise HTTPException(status_code=503, detail="Liveness tracker not initialised")
    return tracker


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/ratelimit/{identifier}")
async def get_status(
    identifier: str,
    action: str = "default",
    engine: RateLimitEngine = Depends(get_engine),
) -> Any:
    """Current authoritative window size for an identifier."""
    result = await engine.status(identifier, action)
    if isinstance(result, StatusError):
        return JSONResponse(status_code=503, content=result.to_dict())
    return result.to_dict()


@router.delete("/ratelimit/{identifier}")
async def reset_limit(
    identifier: str,
    action: str = "default",
    engine: RateLimitEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Clear the window for an identifier (administrative override)."""
    reset = await engine.reset(identifier, action)
    logger.info(f"Admin reset for {identifier}:{action} -> {reset}")
    return {"reset": reset, "identifier": identifier, "action": action}


@router.get("/nodes")
async def list_nodes(
    engine: RateLimitEngine = Depends(get_engine),
    tracker: NodeLivenessTracker = Depends(get_tracker),
) -> Any:
    """Active nodes, as seen through their heartbeat records."""
    try:
        nodes = await tracker.list_active_nodes()
    except Exception as e:
        logger.error(f"Failed to list nodes: {e}")
        return JSONResponse(status_code=503, content={"error": "Node listing failed"})

    if engine.ring is not None:
        await tracker.sync_ring(engine.ring)
    return {"nodeId": tracker.node_id, "active": nodes}


@router.get("/ring/{identifier}")
async def ring_owner(
    identifier: str,
    engine: RateLimitEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Node owning an identifier on the hash ring."""
    return {"identifier": identifier, "owner": engine.owner_of(identifier)}
