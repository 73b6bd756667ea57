"""Error taxonomy shared by the queue layer, the sync coordinator and the API."""


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    retryable = False


class ValidationError(OrchestratorError):
    """Bad input. Fails immediately, never retried, never alerted."""


class TransientAdapterError(OrchestratorError):
    """Network, timeout or rate-limit failure talking to a marketplace."""

    retryable = True


class CredentialError(OrchestratorError):
    """Marketplace rejected the connection credentials."""


class PartialItemError(OrchestratorError):
    """A single item inside a batch could not be synced."""

    def __init__(self, external_id: str, message: str):
        super().__init__(f"{external_id}: {message}")
        self.external_id = external_id


class InfrastructureError(OrchestratorError):
    """Broker or datastore unreachable."""

    retryable = True


class InvalidTransitionError(OrchestratorError):
    """A job status change that the state machine does not allow."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid job transition {current} -> {target}")
        self.current = current
        self.target = target


def is_retryable(error: BaseException) -> bool:
    """Whether the queue manager may retry a job that raised ``error``."""
    if isinstance(error, OrchestratorError):
        return error.retryable
    return True
