"""Custom exceptions for kubefleet."""


class KubefleetError(Exception):
    """Base exception for all kubefleet errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ConfigurationError(KubefleetError):
    """Exception raised for configuration errors."""

    pass


class ValidationError(KubefleetError):
    """Exception raised for validation errors."""

    pass


class ClusterFileError(KubefleetError):
    """Exception raised when the persisted cluster file cannot be read or written."""

    pass


class KubernetesError(KubefleetError):
    """Exception raised for Kubernetes API and kubeadm errors."""

    pass


class RegistryError(KubefleetError):
    """Exception raised for registry install and configuration errors."""

    pass


class RemoteExecutionError(KubefleetError):
    """Exception raised when a command or copy fails on one host."""

    def __init__(self, host: str, message: str, details: str = None):
        self.host = host
        super().__init__(f"[{host}] {message}", details)


class FanoutError(KubefleetError):
    """Exception raised when one or more hosts fail during a fan-out step.

    Every host of the step has finished (or failed) by the time this is raised,
    so ``failures`` holds the complete picture for the step.
    """

    def __init__(self, step: str, failures: dict):
        self.step = step
        self.failures = dict(failures)
        lines = [f"  {host}: {err}" for host, err in self.failures.items()]
        super().__init__(
            f"Step '{step}' failed on {len(self.failures)} host(s): {', '.join(self.hosts)}",
            "\n".join(lines),
        )

    @property
    def hosts(self) -> list[str]:
        """Hosts that failed, in the order the step was given them."""
        return list(self.failures)


class SSHNotReadyError(KubefleetError):
    """Exception raised when hosts never become reachable over SSH."""

    def __init__(self, hosts: list[str]):
        self.hosts = list(hosts)
        super().__init__(
            f"SSH is not reachable on host(s): {', '.join(self.hosts)}",
            "Check that the hosts are up and that the SSH user, password or key are correct",
        )


class HookError(KubefleetError):
    """Exception raised when a lifecycle hook fails."""

    def __init__(self, phase: str, hook: str, error: Exception):
        self.phase = phase
        self.hook = hook
        self.error = error
        super().__init__(f"Hook '{hook}' failed in phase '{phase}': {error}")


class OperationError(KubefleetError):
    """Exception raised when an installer pipeline step fails.

    Wraps the underlying error with the operation and step name.
    """

    def __init__(self, operation: str, step: str, error: Exception):
        self.operation = operation
        self.step = step
        self.error = error
        details = error.details if isinstance(error, KubefleetError) else None
        message = error.message if isinstance(error, KubefleetError) else str(error)
        super().__init__(f"{operation} failed at step '{step}': {message}", details)
