"""Game session endpoints: view, player actions, token usage."""

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from childsim.engine.machine import GameSession
from childsim.models import Phase

from .models import ActionResult, ChoiceBody, StartBody

router = APIRouter(prefix="/game")


def get_session(request: Request) -> GameSession:
    return request.app.state.session


def _busy(session: GameSession) -> ActionResult | None:
    if session.in_flight:
        return ActionResult(status="busy")
    return None


@router.get("")
async def get_game(session: GameSession = Depends(get_session)):
    """Current session view."""
    return session.view().model_dump(mode="json")


@router.post("/start", response_model=ActionResult)
async def start_game(
    background_tasks: BackgroundTasks,
    body: StartBody | None = None,
    session: GameSession = Depends(get_session),
):
    """Start a new game, abandoning the current one."""
    requirements = body.special_requirements if body else ""
    background_tasks.add_task(session.start_game, requirements)
    return ActionResult(status="scheduled")


@router.post("/resume")
async def resume_game(session: GameSession = Depends(get_session)):
    """Restore the saved game, if any."""
    return {"resumed": session.resume(), "view": session.view().model_dump(mode="json")}


@router.post("/continue", response_model=ActionResult)
async def continue_game(background_tasks: BackgroundTasks, session: GameSession = Depends(get_session)):
    """Move on from the feedback screen (next question or the ending)."""
    if busy := _busy(session):
        return busy
    background_tasks.add_task(session.continue_game)
    return ActionResult(status="scheduled")


@router.post("/choice", response_model=ActionResult)
async def choose(
    body: ChoiceBody,
    background_tasks: BackgroundTasks,
    session: GameSession = Depends(get_session),
):
    """Answer the current question."""
    if busy := _busy(session):
        return busy
    background_tasks.add_task(session.select_option, body.option_id)
    return ActionResult(status="scheduled")


@router.post("/ending", response_model=ActionResult)
async def request_ending(background_tasks: BackgroundTasks, session: GameSession = Depends(get_session)):
    """Ask for the ending (or retry it after a failure)."""
    if busy := _busy(session):
        return busy
    if session.phase is not Phase.ENDING or session.ending is not None:
        return ActionResult(status="ignored")
    background_tasks.add_task(session.request_ending)
    return ActionResult(status="scheduled")


@router.post("/restart")
async def restart_game(session: GameSession = Depends(get_session)):
    """Back to the welcome screen; the saved game is deleted."""
    session.restart()
    return session.view().model_dump(mode="json")


@router.get("/usage")
async def get_usage(session: GameSession = Depends(get_session)):
    """Token usage and estimated cost of the current game."""
    return session.usage().model_dump()
