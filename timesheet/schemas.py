"""
Pydantic schemas for the timesheet API.
"""

from __future__ import annotations

from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

DATE_KEY_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


def validate_date_key(value: str) -> str:
    """Reject well-formed but impossible dates such as 2024-13-45."""
    try:
        date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"{value} is not a calendar date") from None
    return value


class TimesheetUpdate(BaseModel):
    """Partial update for one date. Unrecognised fields are dropped."""

    model_config = ConfigDict(extra="ignore")

    meal1: Optional[bool] = None
    meal2: Optional[bool] = None
    meal3: Optional[bool] = None
    meal4: Optional[bool] = None
    note: Optional[str] = None

    def fields(self) -> dict:
        """Only the fields the client actually sent, minus explicit nulls."""
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None
        }


class OkResponse(BaseModel):
    ok: Literal[True] = True


class UploadResponse(OkResponse):
    filename: str


class ErrorResponse(BaseModel):
    error: str
