"""Error taxonomy shared by the dispatch pipeline and its collaborators."""

from __future__ import annotations


class PluginDispatchError(RuntimeError):
    """Base error for plugin dispatch operations."""


class ConfigurationError(PluginDispatchError):
    """Command configuration is missing, empty, or invalid."""


class TransportError(PluginDispatchError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(TransportError):
    """Raised for 401/403 answers from the remote API."""


class PollTimeoutError(PluginDispatchError):
    def __init__(self, run_id: int, attempts: int, elapsed: float) -> None:
        super().__init__(f"run {run_id} not completed after {attempts} checks ({elapsed:.0f}s)")
        self.run_id = run_id
        self.attempts = attempts
        self.elapsed = elapsed


class PollCancelledError(PluginDispatchError):
    def __init__(self, run_id: int, attempts: int) -> None:
        super().__init__(f"wait for run {run_id} cancelled after {attempts} checks")
        self.run_id = run_id
        self.attempts = attempts


class ExtractionError(PluginDispatchError):
    """Job or step detail for a completed run could not be read."""
