"""Exception hierarchy for convoy."""


class ConvoyError(Exception):
    """Base exception for convoy errors."""


class ConfigError(ConvoyError):
    """Raised when configuration is missing or invalid."""


class RemoteExecutionError(ConvoyError):
    """Raised when a command cannot be executed on a host."""

    def __init__(self, host: str, message: str) -> None:
        self.host = host
        super().__init__(f"{host}: {message}")


class LockError(ConvoyError):
    """Error acquiring or managing the deployment lock."""


class LockTimeoutError(LockError):
    """Raised when a host misses the lock acquisition deadline."""


class BuildError(ConvoyError):
    """Raised when an image build or push fails."""


class PortForwardError(ConvoyError):
    """Raised when a reverse port forward cannot be established."""


class DeploymentError(ConvoyError):
    """Raised when a container rollout fails on a host."""
