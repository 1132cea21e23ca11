class BuildError(Exception):
    pass


class ConfigurationError(BuildError):
    pass


class DependencyError(BuildError):
    pass


class ToolchainError(BuildError):
    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command or []
        self.stdout = stdout
        self.stderr = stderr


class CompositionError(BuildError):
    pass


class VerificationError(Exception):
    pass
