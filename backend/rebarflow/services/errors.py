"""Pipeline error taxonomy. Each error carries the HTTP status it surfaces as."""
from typing import Any, Dict, Optional


class PipelineError(Exception):
    status_code = 400

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "detail": self.message, **self.detail}


class NotFound(PipelineError):
    status_code = 404


class SessionNotFound(NotFound):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found", {"session_id": session_id})


class TaskNotFound(NotFound):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found", {"task_id": task_id})


class QueueItemNotFound(NotFound):
    def __init__(self, item_id: str):
        super().__init__(f"Queue item {item_id} not found", {"queue_item_id": item_id})


class MachineNotFound(NotFound):
    def __init__(self, machine_id: str):
        super().__init__(f"Machine {machine_id} not found", {"machine_id": machine_id})


class InvalidTransition(PipelineError):
    status_code = 409

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move session from '{current}' to '{target}'",
            {"current_status": current, "target_status": target},
        )
        self.current = current
        self.target = target


class ValidationBlocked(PipelineError):
    status_code = 409

    def __init__(self, blocker_count: int):
        super().__init__(
            f"Cannot approve: {blocker_count} blocking errors remain",
            {"blockers": blocker_count},
        )
        self.blocker_count = blocker_count


class EmptySession(PipelineError):
    status_code = 400

    def __init__(self, session_id: str, action: str):
        super().__init__(f"No rows to {action}", {"session_id": session_id})


class CascadeWriteFailure(PipelineError):
    """
    A persistence step of the approval cascade failed. The transaction was
    rolled back; `created` lists identifiers generated before the failure so
    an operator can correlate logs or retry.
    """
    status_code = 500

    def __init__(self, step: str, created: Dict[str, Any], cause: Exception):
        super().__init__(
            f"Approval cascade failed at step '{step}': {cause}",
            {"step": step, "created": created},
        )
        self.step = step
        self.created = created


class ExtractionError(PipelineError):
    status_code = 502


class CapabilityMismatch(PipelineError):
    status_code = 403


class MachineUnavailable(PipelineError):
    """Target machine is down or already busy with another run."""
    status_code = 409
