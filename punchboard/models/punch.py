from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from punchboard.config.settings import DisplaySettings


class PunchRecord(BaseModel):
    """A radio punch as announced to the display client."""

    model_config = ConfigDict(
        frozen=True,  # Make instances immutable
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str = Field(..., description="Identity key, see utils.misc_utils.punch_identity.")
    control: str
    bib_number: str = Field(..., min_length=1)
    leg: int = Field(..., ge=0)
    leg_runner: int = Field(..., ge=0, description="Position of the runner within the leg.")
    punch_time: datetime = Field(
        ..., description="Local wall-clock time: midnight of the event day plus start and running time."
    )
    runner_id: str
    runner_name: Optional[str] = None


class _ClientEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_sse(self) -> str:
        """Frames the event as a single server-sent event."""
        return f"data: {self.model_dump_json(by_alias=True)}\n\n"


class PunchEvent(_ClientEvent):
    type: Literal["punch"] = "punch"
    data: PunchRecord


class PunchesEvent(_ClientEvent):
    type: Literal["punches"] = "punches"
    data: List[PunchRecord]


class SettingsEvent(_ClientEvent):
    type: Literal["settings"] = "settings"
    data: DisplaySettings
