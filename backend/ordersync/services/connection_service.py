"""Storefront connection registry.

WHAT:
    Looks up and persists the per-workspace Shopify connection:
    - get_active_connection / list_active_connections (sync pipeline)
    - save_connection / disconnect (OAuth completion and uninstall)
    - mark_sync_started / mark_sync_finished (sync health tracking)

WHY:
    The orchestrator needs a decrypted credential per workspace, and
    treats a missing connection as terminal for that workspace's jobs.

REFERENCES:
    - ordersync/security.py (token encryption)
    - ordersync/models.py (Connection, Token)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ordersync.exceptions import ConfigurationError, ConnectionNotFoundError
from ordersync.models import Connection, ProviderEnum, Token
from ordersync.security import decrypt_access_token, encrypt_access_token
from ordersync.telemetry import capture_exception

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelConnection:
    """Decrypted, session-independent view of a Connection row."""
    id: str
    workspace_id: str
    shop_domain: str
    access_token: str
    name: str
    scope: Optional[str] = None


def _get_access_token(connection: Connection) -> str:
    """Decrypt the token from the connection's Token record."""
    if not connection.token or not connection.token.access_token_enc:
        raise ConfigurationError(
            "Connection has no associated token. Please reconnect.",
            workspace_id=str(connection.workspace_id),
        )

    return decrypt_access_token(connection.token.access_token_enc, shop_domain=connection.external_account_id)


def _to_channel_connection(connection: Connection) -> ChannelConnection:
    return ChannelConnection(
        id=str(connection.id),
        workspace_id=str(connection.workspace_id),
        shop_domain=connection.external_account_id,
        access_token=_get_access_token(connection),
        name=connection.name,
        scope=connection.token.scope if connection.token else None,
    )


def _as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class ConnectionRegistry:
    """Connection lookups and writes. Each call owns a short-lived session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _query_active(self, db: Session, provider: ProviderEnum):
        return db.query(Connection).filter(
            Connection.provider == provider,
            Connection.status == "active",
        )

    def get_active_connection(
        self,
        workspace_id: str | UUID,
        provider: ProviderEnum = ProviderEnum.shopify,
    ) -> ChannelConnection:
        """Return the workspace's active connection.

        Raises:
            ConnectionNotFoundError: No active connection (terminal for the job)
            ConfigurationError: Connection exists but has no usable token
        """
        db = self.session_factory()
        try:
            connection = (
                self._query_active(db, provider)
                .filter(Connection.workspace_id == _as_uuid(workspace_id))
                .first()
            )
            if not connection:
                raise ConnectionNotFoundError(str(workspace_id), provider.value)
            return _to_channel_connection(connection)
        finally:
            db.close()

    def list_active_connections(
        self,
        provider: ProviderEnum = ProviderEnum.shopify,
    ) -> List[ChannelConnection]:
        """All active connections for a provider.

        Connections whose token cannot be decrypted are reported and left
        out so one broken tenant does not block the scheduled sweep.
        """
        db = self.session_factory()
        try:
            result: List[ChannelConnection] = []
            for connection in self._query_active(db, provider).all():
                try:
                    result.append(_to_channel_connection(connection))
                except (ConfigurationError, ValueError) as e:
                    logger.warning(
                        "[CONNECTIONS] Skipping connection %s (workspace=%s): %s",
                        connection.id,
                        connection.workspace_id,
                        e,
                    )
                    capture_exception(e, extra={"connection_id": str(connection.id)})
            return result
        finally:
            db.close()

    # =========================================================================
    # OAUTH LIFECYCLE
    # =========================================================================

    def save_connection(
        self,
        workspace_id: str | UUID,
        shop_domain: str,
        access_token: str,
        scope: Optional[str] = None,
        name: Optional[str] = None,
    ) -> ChannelConnection:
        """Create or refresh the workspace's Shopify connection after OAuth."""
        db = self.session_factory()
        try:
            ws_id = _as_uuid(workspace_id)
            connection = db.query(Connection).filter(
                Connection.workspace_id == ws_id,
                Connection.provider == ProviderEnum.shopify,
            ).first()

            encrypted = encrypt_access_token(access_token, shop_domain=shop_domain)

            if connection:
                if connection.token is None:
                    connection.token = Token(provider=ProviderEnum.shopify)
                connection.token.access_token_enc = encrypted
                connection.token.scope = scope
                connection.external_account_id = shop_domain
                connection.name = name or connection.name
                connection.status = "active"
                connection.updated_at = datetime.now(timezone.utc)
                logger.info("[CONNECTIONS] Updated Shopify connection for workspace %s (%s)", ws_id, shop_domain)
            else:
                token = Token(provider=ProviderEnum.shopify, access_token_enc=encrypted, scope=scope)
                connection = Connection(
                    workspace_id=ws_id,
                    provider=ProviderEnum.shopify,
                    external_account_id=shop_domain,
                    name=name or shop_domain,
                    status="active",
                    token=token,
                )
                db.add(connection)
                logger.info("[CONNECTIONS] Created Shopify connection for workspace %s (%s)", ws_id, shop_domain)

            db.commit()
            db.refresh(connection)
            return _to_channel_connection(connection)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def disconnect(
        self,
        workspace_id: str | UUID,
        provider: ProviderEnum = ProviderEnum.shopify,
    ) -> bool:
        """Delete the connection and its token. Returns False if none existed."""
        db = self.session_factory()
        try:
            connection = db.query(Connection).filter(
                Connection.workspace_id == _as_uuid(workspace_id),
                Connection.provider == provider,
            ).first()
            if not connection:
                return False

            token = connection.token
            db.delete(connection)
            if token is not None:
                db.delete(token)
            db.commit()
            logger.info("[CONNECTIONS] Disconnected %s for workspace %s", provider.value, workspace_id)
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # =========================================================================
    # SYNC TRACKING
    # =========================================================================

    def mark_sync_started(self, connection_id: str | UUID) -> None:
        db = self.session_factory()
        try:
            connection = db.get(Connection, _as_uuid(connection_id))
            if not connection:
                return
            connection.last_sync_attempted_at = datetime.now(timezone.utc)
            connection.total_syncs_attempted = (connection.total_syncs_attempted or 0) + 1
            connection.sync_status = "syncing"
            db.commit()
        finally:
            db.close()

    def mark_sync_finished(self, connection_id: str | UUID, error: Optional[str] = None) -> None:
        db = self.session_factory()
        try:
            connection = db.get(Connection, _as_uuid(connection_id))
            if not connection:
                return
            if error:
                connection.sync_status = "error"
                connection.last_sync_error = error[:1000]
            else:
                connection.sync_status = "idle"
                connection.last_sync_error = None
                connection.last_sync_completed_at = datetime.now(timezone.utc)
            db.commit()
        finally:
            db.close()
