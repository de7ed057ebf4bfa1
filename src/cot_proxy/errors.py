from __future__ import annotations


class ProxyError(Exception):
    """Base error for gateway failures."""


class ConfigurationError(ProxyError):
    pass


class UnsupportedProviderError(ConfigurationError):
    """Fallback handler is unknown or has no request shape."""


class InvalidRequestError(ProxyError):
    """Inbound completion request could not be used."""


class ChainOfThoughtError(ProxyError):
    """Auxiliary model returned no usable chain of thought."""


class AuthenticationError(ProxyError):
    pass


class RateLimitError(ProxyError):
    def __init__(self, retry_after_seconds: int | None = None, message: str = "Rate limited"):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class UpstreamProtocolError(ProxyError):
    """Upstream unreachable or answered with an unexpected shape."""


class RequestTimeoutError(ProxyError):
    """Server-side request deadline exceeded."""


class ThoughtLoggingDisabledError(ProxyError):
    pass


class ThoughtNotFoundError(ProxyError):
    pass


class RelayCancelledError(ProxyError):
    def __init__(self, reason: str):
        super().__init__(f"Relay cancelled ({reason}).")
        self.reason = reason
