"""Exceptions raised by Loop Medic components."""


class MedicError(Exception):
    """Base class for Loop Medic errors."""


class ActionContractError(MedicError):
    """An action variant was handed to an executor that cannot run it."""


class AdmissionTimeoutError(MedicError, TimeoutError):
    """No concurrency slot became available before the acquire timeout."""

    def __init__(self, key: str):
        super().__init__(f"Timeout waiting for concurrency slot: {key}")
        self.key = key


class AdmissionResetError(MedicError):
    """The concurrency controller was reset while the caller was waiting."""

    def __init__(self, key: str):
        super().__init__(f"Concurrency controller reset while waiting: {key}")
        self.key = key


class TaskNotFoundError(MedicError):
    """The task backend has no task with the requested ID."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id
