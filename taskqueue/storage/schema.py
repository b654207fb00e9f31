import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from ..errors import InvalidTransitionError

DEFAULT_MAX_RETRY = 3


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

# processing -> pending is the only backward edge, taken by retry.
_ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    return str(uuid.uuid4())


class Task(BaseModel):
    id: str = Field(default_factory=new_task_id)
    type: str
    payload: str = ""
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None
    retries: int = Field(default=0, ge=0)
    max_retry: int = Field(default=DEFAULT_MAX_RETRY, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _retries_within_budget(self):
        if self.retries > self.max_retry:
            raise ValueError(f"retries ({self.retries}) exceeds max_retry ({self.max_retry})")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def can_retry(self) -> bool:
        return self.retries < self.max_retry

    def transition(self, target: TaskStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target

    def mark_processing(self) -> None:
        self.transition(TaskStatus.PROCESSING)

    def mark_completed(self, result: str) -> None:
        self.transition(TaskStatus.COMPLETED)
        self.result = result
        self.error = None

    def mark_failed(self, error: str) -> None:
        self.transition(TaskStatus.FAILED)
        self.error = error
