"""
Credential store accessor.

Reads and writes the per-user cloud provider connections every
collection function depends on.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pkg.database import CloudProviderConnection
from pkg.errors import NoActiveConnectionError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

PROVIDERS = ("aws", "azure", "gcp")

# Credential keys each provider's connection wizard collects.
REQUIRED_CREDENTIALS: dict[str, tuple[str, ...]] = {
    "aws": ("accessKeyId", "secretAccessKey"),
    "azure": ("clientId", "clientSecret", "tenantId", "subscriptionId"),
    "gcp": ("projectId", "serviceAccountJson"),
}
OPTIONAL_CREDENTIALS: dict[str, tuple[str, ...]] = {
    "aws": ("region",),
    "azure": (),
    "gcp": (),
}


def validate_provider(provider: str) -> str:
    """Normalize *provider* and reject anything but aws/azure/gcp."""
    name = (provider or "").strip().lower()
    if name not in PROVIDERS:
        raise ValidationError(
            f"Unknown provider '{provider}'. Must be one of: {list(PROVIDERS)}"
        )
    return name


def validate_credentials(provider: str, credentials: dict[str, Any]) -> dict[str, str]:
    """Check that *credentials* carries every key *provider* needs.

    Returns a copy restricted to the known keys, with string values
    stripped of surrounding whitespace.
    """
    provider = validate_provider(provider)
    required = REQUIRED_CREDENTIALS[provider]

    missing = [
        key
        for key in required
        if not isinstance(credentials.get(key), str) or not credentials[key].strip()
    ]
    if missing:
        raise ValidationError(
            f"Missing required {provider.upper()} credentials: {', '.join(missing)}"
        )

    allowed = required + OPTIONAL_CREDENTIALS[provider]
    return {
        key: str(credentials[key]).strip()
        for key in allowed
        if credentials.get(key) not in (None, "")
    }


class ConnectionStore:
    """CRUD over :class:`CloudProviderConnection` rows, keyed by user."""

    def get_active(
        self,
        db: Session,
        user_id: str,
        provider: str,
    ) -> CloudProviderConnection:
        """Return the user's active connection for *provider*.

        Raises
        ------
        NoActiveConnectionError
            If the user has no active connection with credentials.
        """
        provider = validate_provider(provider)
        connection = (
            db.query(CloudProviderConnection)
            .filter(
                CloudProviderConnection.user_id == user_id,
                CloudProviderConnection.provider == provider,
                CloudProviderConnection.is_active.is_(True),
            )
            .first()
        )
        if connection is None or not connection.credentials:
            logger.info("No active %s connection for user %s", provider, user_id)
            raise NoActiveConnectionError(provider)
        return connection

    def list_for_user(self, db: Session, user_id: str) -> list[CloudProviderConnection]:
        return (
            db.query(CloudProviderConnection)
            .filter(CloudProviderConnection.user_id == user_id)
            .order_by(CloudProviderConnection.provider)
            .all()
        )

    def save(
        self,
        db: Session,
        user_id: str,
        provider: str,
        credentials: dict[str, Any],
    ) -> CloudProviderConnection:
        """Validate and store credentials, activating the connection."""
        provider = validate_provider(provider)
        cleaned = validate_credentials(provider, credentials)

        connection = (
            db.query(CloudProviderConnection)
            .filter(
                CloudProviderConnection.user_id == user_id,
                CloudProviderConnection.provider == provider,
            )
            .first()
        )
        if connection is None:
            connection = CloudProviderConnection(
                user_id=user_id,
                provider=provider,
                credentials=cleaned,
                is_active=True,
            )
            db.add(connection)
        else:
            connection.credentials = cleaned
            connection.is_active = True

        self._commit(db, f"save {provider} connection")
        db.refresh(connection)
        logger.info("Saved %s connection for user %s", provider, user_id)
        return connection

    def deactivate(
        self,
        db: Session,
        user_id: str,
        provider: str,
    ) -> CloudProviderConnection:
        connection = self.get_active(db, user_id, provider)
        connection.is_active = False
        self._commit(db, f"deactivate {provider} connection")
        db.refresh(connection)
        logger.info("Deactivated %s connection for user %s", provider, user_id)
        return connection

    def mark_synced(self, connection: CloudProviderConnection) -> None:
        """Stamp the connection's last sync time; the caller commits."""
        connection.last_sync_at = datetime.now(timezone.utc)

    @staticmethod
    def _commit(db: Session, action: str) -> None:
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to %s: %s", action, exc)
            raise PersistenceError(f"Failed to {action}") from exc
