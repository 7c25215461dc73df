"""Exception hierarchy shared by the agent loop, providers and config."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class ProviderError(AgentError):
    """Raised when the LLM backend fails after retries are exhausted."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Raised when a provider request exceeds its time budget."""
