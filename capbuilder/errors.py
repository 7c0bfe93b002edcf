"""Build failures, each tagged with a stable ``kind`` for clients."""


class BuildError(Exception):
    kind = "build"

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.message = message
        self.stage = stage


class ValidationError(BuildError):
    """Request rejected before any workspace exists."""

    kind = "validation"


class ToolchainMissingError(BuildError):
    kind = "environment"


class ExitCodeError(BuildError):
    kind = "exit_code"

    def __init__(self, command: str, code: int, stage: str | None = None):
        super().__init__(f"{command} exited with code {code}", stage)
        self.command = command
        self.code = code


class CommandTimeoutError(BuildError):
    kind = "timeout"

    def __init__(self, command: str, timeout: float, stage: str | None = None):
        super().__init__(f"{command} timed out after {int(timeout)}s", stage)
        self.command = command
        self.timeout = timeout


class BuildScriptError(BuildError):
    kind = "build_script"


class ArtifactNotFoundError(BuildError):
    kind = "artifact_missing"
