from pydantic import BaseModel, Field
from typing import Optional

class CreateTaskRequest(BaseModel):
    type: str = Field(min_length=1)
    payload: str = ""
    max_retry: Optional[int] = Field(default=None, ge=0)

class HealthResponse(BaseModel):
    status: str  # ok | degraded
    pending: Optional[int] = None
    workers_running: bool = False
    stats: dict[str, int] = Field(default_factory=dict)
