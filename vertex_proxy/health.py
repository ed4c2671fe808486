"""Health endpoint for Vertex Proxy.

GET /health: 503 until the lifespan marks the app ready, then 200 with the
upstream target and the token cache state. Polled by container probes.
Reading the token cache state never triggers a credential fetch.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

router = APIRouter(tags=["health"])

STARTING_DETAIL: dict[str, str] = {
    "status": "starting",
    "message": "Vertex Proxy is starting up.",
}


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check endpoint.

    Response body (200):
        {
          "status": "ok",
          "target": "https://us-central1-aiplatform.googleapis.com/v1/projects/.../openapi",
          "token_cached": true,
          "token_expires_in_s": 3412.7
        }
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(status_code=503, detail=STARTING_DETAIL)

    body: dict[str, Any] = {
        "status": "ok",
        "target": request.app.state.rewriter.target.url,
    }
    body.update(request.app.state.token_cache.snapshot())
    return body
