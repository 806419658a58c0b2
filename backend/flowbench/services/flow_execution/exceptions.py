"""Flow execution exceptions."""


class FlowExecutionError(Exception):
    """Base class for errors raised by the flow execution package."""


class ConfigurationError(FlowExecutionError):
    """Raised when a flow definition is malformed. No step has run."""

    def __init__(self, flow_id: str, problems: list[str]) -> None:
        self.flow_id = flow_id
        self.problems = problems
        super().__init__(
            f"Flow {flow_id!r} is not runnable: {'; '.join(problems)}"
        )


class BackendRequestError(FlowExecutionError):
    """Raised when the backend request service cannot be reached or refuses."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class FlowNotFoundError(BackendRequestError):
    """Raised when the backend has no flow with the requested id."""

    def __init__(self, flow_id: str) -> None:
        self.flow_id = flow_id
        super().__init__(f"Flow not found: {flow_id}", status_code=404)
