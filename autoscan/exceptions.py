"""Custom exceptions for autoscan."""


class AutoScanError(Exception):
    """Base exception for autoscan."""

    pass


class ConfigurationError(AutoScanError):
    """Configuration-related errors."""

    pass


class BackendError(AutoScanError):
    """Scan backend could not be reached or refused the request."""

    pass


class BackendHTTPError(BackendError):
    """Backend answered with a non-success status code."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedPayloadError(BackendError):
    """Backend answered with a body that cannot be interpreted."""

    pass


class ScanError(AutoScanError):
    """Scan launch/watch errors."""

    pass


class LaunchError(ScanError):
    """A scan could not be started."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Scan '{tool_name}' failed to start: {message}")
        self.tool_name = tool_name


class UnknownToolError(ScanError):
    """Tool is not part of the scan catalog."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown scan tool: {tool_name}")
        self.tool_name = tool_name


class WatchConflictError(ScanError):
    """A watch for the same tool and target is already active."""

    def __init__(self, tool_name: str, target_id: str):
        super().__init__(f"Scan '{tool_name}' for target {target_id} is already being watched")
        self.tool_name = tool_name
        self.target_id = target_id


class PipelineError(AutoScanError):
    """Pipeline run errors."""

    pass


class PipelineBusyError(PipelineError):
    """A run is already in flight for this target."""

    def __init__(self, target_id: str):
        super().__init__(f"Auto scan already running for target {target_id}")
        self.target_id = target_id


class TargetNotFoundError(PipelineError):
    """Scope target does not exist on the backend."""

    def __init__(self, target_id: str):
        super().__init__(f"Scope target not found: {target_id}")
        self.target_id = target_id


class UnknownStepError(PipelineError):
    """Step name is not part of the pipeline definition."""

    def __init__(self, step: str):
        super().__init__(f"Unknown pipeline step: {step}")
        self.step = step


class StateStoreError(AutoScanError):
    """Run-state persistence errors."""

    pass
