class QueueError(Exception):
    """Base class for task queue failures."""


class StoreUnavailableError(QueueError):
    """Redis could not be reached or rejected the command."""


class TaskSerializationError(QueueError):
    """A task record could not be encoded or decoded."""


class InvalidTransitionError(QueueError):
    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(f"task {task_id}: cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class RetryBudgetExceededError(QueueError):
    def __init__(self, task_id: str, max_retry: int):
        super().__init__(f"task {task_id}: retry budget of {max_retry} exhausted")
        self.task_id = task_id
        self.max_retry = max_retry
