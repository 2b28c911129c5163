"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel


class StartBody(BaseModel):
    special_requirements: str = ""


class ChoiceBody(BaseModel):
    option_id: str


class ActionResult(BaseModel):
    status: str  # "scheduled" | "busy" | "ignored"
