"""
Error hierarchy shared by every CostLens component.

Each exception carries the HTTP status it maps to so the API layer can
render any failure as ``{"error": message}`` without knowing where it
was raised.
"""

from __future__ import annotations


class CostLensError(Exception):
    """Base class for all expected CostLens failures."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthenticationError(CostLensError):
    """Missing, unknown, revoked or expired caller identity."""

    status_code = 401


class ValidationError(CostLensError):
    """The request carried data we cannot work with."""

    status_code = 400


class NoActiveConnectionError(CostLensError):
    """The user has not connected the requested provider."""

    status_code = 400

    def __init__(self, provider: str) -> None:
        super().__init__(f"No active {provider.upper()} connection found")
        self.provider = provider


class NotFoundError(CostLensError):
    status_code = 404


class ConfigurationError(CostLensError):
    """Required upstream configuration is missing."""

    status_code = 500


class UpstreamServiceError(CostLensError):
    """A vendor API or the text-generation service failed."""

    status_code = 500

    def __init__(
        self,
        service: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(f"{service} request failed: {message}", status_code)
        self.service = service


class PersistenceError(CostLensError):
    """A database write failed; the transaction was rolled back."""

    status_code = 500
