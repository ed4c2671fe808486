"""GET /v1/models: the OpenAI-style model list, served locally.

Vertex's OpenAI endpoint has no model listing, so the proxy answers from
configuration (``models.available`` / VERTEXAI_AVAILABLE_MODELS). The route
is registered before the proxy catch-all so it is never forwarded.
"""

from __future__ import annotations

import time
from typing import Any, Sequence

from fastapi import APIRouter, Request

from vertex_proxy.constants import MODEL_OWNER
from vertex_proxy.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["models"])


def build_model_list(model_ids: Sequence[str], created: int) -> dict[str, Any]:
    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "created": created,
                "owned_by": MODEL_OWNER,
            }
            for model_id in model_ids
        ],
    }


@router.get("/v1/models")
async def list_models(request: Request) -> dict[str, Any]:
    """OpenAI-compatible model list for the configured model ids."""
    model_ids = request.app.state.config.models.available
    body = build_model_list(model_ids, created=int(time.time()))
    logger.info("Sent models list", count=len(model_ids))
    return body
