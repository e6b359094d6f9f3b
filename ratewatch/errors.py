"""Custom exception types for ratewatch."""

from __future__ import annotations

from typing import Optional


class RateWatchError(Exception):
    """Base class for engine errors, carrying optional run context."""

    default_message = "Rate tracking error."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        owner_id: Optional[int | str] = None,
        url: Optional[str] = None,
        entity: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        self.owner_id = owner_id
        self.url = url
        self.entity = entity
        super().__init__(self.message)

    def __str__(self) -> str:
        context_parts: list[str] = []
        if self.owner_id is not None:
            context_parts.append(f"owner={self.owner_id}")
        if self.entity:
            context_parts.append(f"entity={self.entity}")
        if self.url:
            context_parts.append(f"url={self.url}")
        context = ", ".join(context_parts)
        return f"{self.message} ({context})" if context else self.message


class AuthenticationError(RateWatchError):
    """Raised when the portal login cannot be completed."""

    default_message = "Login failed."


class PageLoadError(RateWatchError):
    """Raised when a portal page fails to load or render its controls."""

    default_message = "Failed to load page."


class StorageUnavailableError(RateWatchError):
    """Raised when the relational store cannot serve a request."""

    default_message = "Database not available."


class ValidationError(RateWatchError):
    """Raised when boundary input is rejected before any engine work."""

    default_message = "Invalid input."


class CredentialError(RateWatchError):
    """Raised when a stored portal secret cannot be encrypted or decrypted."""

    default_message = "Failed to decrypt portal credentials."


class ConfigError(RateWatchError):
    """Raised when the configuration is incomplete or malformed."""

    default_message = "Invalid configuration."
