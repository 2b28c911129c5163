"""FastAPI API endpoints under /api.

Endpoint groups: health and settings, game (session view, player actions, token usage).
Player actions run as background tasks; the UI polls GET /api/game and can
watch renderable_text grow while a reply streams in.
"""

from fastapi import APIRouter

from .game import router as game_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(game_router)
