class HomeBaseError(Exception):
    """Base class for errors surfaced to API and CLI callers."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailure(HomeBaseError):
    status_code = 400


class UnknownActionError(HomeBaseError):
    status_code = 400

    def __init__(self, action: str) -> None:
        super().__init__(f"Unknown workflow action: {action}")
        self.action = action


class ReferenceResolutionError(HomeBaseError):
    status_code = 404


class NotFoundError(HomeBaseError):
    status_code = 404


class PermissionDeniedError(HomeBaseError):
    status_code = 403


class StageRegressionError(HomeBaseError):
    status_code = 409

    def __init__(self, current_stage: str, next_stage: str) -> None:
        super().__init__(f"Workflow cannot move backward: {current_stage} -> {next_stage}")
        self.current_stage = current_stage
        self.next_stage = next_stage


class WorkflowConflictError(HomeBaseError):
    status_code = 409


class PersistenceError(HomeBaseError):
    status_code = 500
