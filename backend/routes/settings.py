"""Health check, settings and connection check endpoints."""

import httpx
from fastapi import APIRouter, Request

from childsim.config import Settings

router = APIRouter()


def _settings(request: Request) -> Settings:
    return request.app.state.settings


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Active model settings. The API key itself is never returned."""
    settings = _settings(request)
    return {
        "provider": settings.provider,
        "model": settings.resolved_model,
        "base_url": settings.resolved_base_url,
        "streaming": settings.streaming,
        "demo": settings.demo,
        "prompt_rate": settings.prompt_rate,
        "completion_rate": settings.completion_rate,
        "has_api_key": bool(settings.api_key),
    }


@router.post("/check-connection")
async def check_connection(request: Request):
    """Quick reachability check against the configured provider."""
    settings = _settings(request)
    if settings.demo:
        return {"ok": True}

    url = f"{settings.resolved_base_url.rstrip('/')}/models"
    headers: dict[str, str] = {}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"
    try:
        async with httpx.AsyncClient(timeout=5) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
    except httpx.HTTPError as e:
        return {"ok": False, "error": str(e) or type(e).__name__}
    return {"ok": True}
