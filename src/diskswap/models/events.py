"""Progress events broadcast to observers (WebSocket clients)."""

from typing import Literal, Optional, Union
from pydantic import BaseModel

from diskswap.models.job import StageLink
from diskswap.models.status import StageName, StageStatus


class StageUpdateEvent(BaseModel):
    type: Literal["stage_update"] = "stage_update"
    stage: StageName
    status: StageStatus
    progress: int
    speed: Optional[float] = None
    eta: Optional[float] = None
    description: Optional[str] = None
    link: Optional[StageLink] = None


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    backup_name: Optional[str] = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    stage: StageName
    message: str


class CancelledEvent(BaseModel):
    type: Literal["cancelled"] = "cancelled"


JobEvent = Union[StageUpdateEvent, DoneEvent, ErrorEvent, CancelledEvent]
