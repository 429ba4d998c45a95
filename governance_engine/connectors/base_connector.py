"""
Base Connector Classes for the Governance Engine.

This module defines the narrow contracts of the engine's external
collaborators: the entitlement source it reads, the access-link API that
fulfils revocations, and the notification gateway that delivers reminders
and escalations. Each contract has an in-memory mock backend.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from ..errors import DownstreamUnavailable
from ..models import EntitlementGrant, UserProfile, utcnow

logger = logging.getLogger(__name__)


class ConnectorResult:
    """Result of a connector operation."""

    def __init__(self, success: bool, message: str = "", data: Optional[Any] = None,
                 error: Optional[str] = None):
        self.success = success
        self.message = message
        self.data = data
        self.error = error

    def __bool__(self):
        return self.success

    def __str__(self):
        return f"{'✓' if self.success else '✗'} {self.message}"


class BaseConnector(ABC):
    """Common configuration handling for all connectors."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, mock_mode: bool = False):
        """
        Initialize the connector.

        Args:
            config: Configuration dictionary with endpoints, tokens, etc.
            mock_mode: If True, use the in-memory backend instead of real APIs
        """
        self.config = config or {}
        self.mock_mode = mock_mode
        self.system_name = self.__class__.__name__.replace("Connector", "").lower()

        logger.info(f"Initialized {self.__class__.__name__} (mock_mode={mock_mode})")

    def validate_config(self) -> bool:
        """
        Validate that the connector has all required configuration.

        Returns:
            True if configuration is valid, False otherwise
        """
        return True

    def is_mock_mode(self) -> bool:
        """Check if this connector is running in mock mode."""
        return self.mock_mode


class EntitlementSource(BaseConnector):
    """
    Read-only supplier of users and their current entitlement grants.

    Implementations raise DownstreamUnavailable when the source cannot be read.
    """

    @abstractmethod
    def list_tenants(self) -> List[str]:
        """List the tenants the engine governs."""

    @abstractmethod
    def list_users(self, tenant_id: str) -> List[UserProfile]:
        """List directory records for a tenant."""

    @abstractmethod
    def list_grants(self, tenant_id: str, user_id: Optional[str] = None) -> List[EntitlementGrant]:
        """
        List entitlement grants for a tenant.

        Args:
            tenant_id: Tenant to read
            user_id: Restrict to one user when given

        Returns:
            Snapshot of EntitlementGrant facts
        """

    def get_user(self, tenant_id: str, user_id: str) -> Optional[UserProfile]:
        for user in self.list_users(tenant_id):
            if user.user_id == user_id:
                return user
        return None

    def grants_by_user(self, tenant_id: str) -> Dict[str, List[EntitlementGrant]]:
        """Group the tenant's grants by user id."""
        grouped: Dict[str, List[EntitlementGrant]] = {}
        for grant in self.list_grants(tenant_id):
            grouped.setdefault(grant.user_id, []).append(grant)
        return grouped


class AccessLinkConnector(BaseConnector):
    """Mutation API used to fulfil revocations."""

    @abstractmethod
    def revoke_access(self, tenant_id: str, user_id: str, app_id: str,
                      access_type: Optional[str] = None) -> ConnectorResult:
        """
        Request removal of an entitlement.

        Args:
            tenant_id: Tenant owning the grant
            user_id: User losing access
            app_id: Application
            access_type: Access level to remove; None removes all levels

        Returns:
            ConnectorResult with success status
        """

    @abstractmethod
    def change_access(self, tenant_id: str, user_id: str, app_id: str,
                      current_access: str, new_access: str) -> ConnectorResult:
        """Replace one access level with another, e.g. downgrade admin to member."""


class NotificationGateway(BaseConnector):
    """Delivery channel for reminders and escalations."""

    @abstractmethod
    def send(self, tenant_id: str, recipient_id: str, subject: str, body: str,
             metadata: Optional[Dict[str, Any]] = None) -> ConnectorResult:
        """
        Deliver a message to a user.

        Args:
            tenant_id: Tenant of the recipient
            recipient_id: User id of the recipient
            subject: Message subject
            body: Plain-text body
            metadata: Structured context for templating downstream

        Returns:
            ConnectorResult with success status
        """


class MockEntitlementSource(EntitlementSource):
    """
    In-memory entitlement source for testing and development.

    Tenants listed in ``unavailable_tenants`` raise DownstreamUnavailable on
    every read.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config, mock_mode=True)
        self.users: Dict[str, Dict[str, UserProfile]] = {}
        self.grants: Dict[str, List[EntitlementGrant]] = {}
        self.unavailable_tenants: Set[str] = set()

    def add_tenant(self, tenant_id: str):
        self.users.setdefault(tenant_id, {})
        self.grants.setdefault(tenant_id, [])

    def load_snapshot(self, path: Union[str, Path]) -> int:
        """
        Load users and grants from a JSON snapshot.

        The file maps tenant ids to ``{"users": [...], "grants": [...]}``.

        Returns:
            Number of grants loaded
        """
        try:
            with open(path, encoding="utf-8") as f:
                snapshot = json.load(f)
        except (OSError, ValueError) as e:
            raise DownstreamUnavailable("entitlement snapshot", str(e)) from e

        loaded = 0
        for tenant_id, data in snapshot.items():
            self.add_tenant(tenant_id)
            for raw in data.get("users", []):
                self.add_user(UserProfile(tenant_id=tenant_id, **raw))
            for raw in data.get("grants", []):
                self.add_grant(EntitlementGrant(tenant_id=tenant_id, **raw))
                loaded += 1

        logger.info(f"Loaded {loaded} grants for {len(snapshot)} tenants from {path}")
        return loaded

    def add_user(self, user: UserProfile) -> UserProfile:
        self.add_tenant(user.tenant_id)
        self.users[user.tenant_id][user.user_id] = user
        return user

    def add_grant(self, grant: EntitlementGrant) -> EntitlementGrant:
        self.add_tenant(grant.tenant_id)
        existing = self._find(grant.tenant_id, grant.user_id, grant.app_id, grant.access_type)
        if not existing:
            self.grants[grant.tenant_id].append(grant)
        return grant

    def remove_grant(self, tenant_id: str, user_id: str, app_id: str,
                     access_type: Optional[str] = None) -> int:
        """Remove matching grants; returns how many were removed."""
        before = len(self.grants.get(tenant_id, []))
        self.grants[tenant_id] = [
            g for g in self.grants.get(tenant_id, [])
            if not (
                g.user_id == user_id
                and g.app_id == app_id
                and (access_type is None or g.access_type == access_type)
            )
        ]
        return before - len(self.grants[tenant_id])

    def _find(self, tenant_id: str, user_id: str, app_id: str, access_type: str) -> Optional[EntitlementGrant]:
        for grant in self.grants.get(tenant_id, []):
            if (grant.user_id, grant.app_id, grant.access_type) == (user_id, app_id, access_type):
                return grant
        return None

    def _check_available(self, tenant_id: str):
        if tenant_id in self.unavailable_tenants:
            raise DownstreamUnavailable("entitlement source", "simulated outage", tenant_id)

    def list_tenants(self) -> List[str]:
        return sorted(set(self.users) | set(self.grants))

    def list_users(self, tenant_id: str) -> List[UserProfile]:
        self._check_available(tenant_id)
        return list(self.users.get(tenant_id, {}).values())

    def list_grants(self, tenant_id: str, user_id: Optional[str] = None) -> List[EntitlementGrant]:
        self._check_available(tenant_id)
        grants = list(self.grants.get(tenant_id, []))
        if user_id:
            grants = [g for g in grants if g.user_id == user_id]
        return grants


class MockAccessLinkConnector(AccessLinkConnector):
    """
    In-memory access-link API.

    Records every revocation request. When linked to a MockEntitlementSource
    the revocation is applied to it. Requests for users in ``failing_users``
    fail.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 source: Optional[MockEntitlementSource] = None):
        super().__init__(config, mock_mode=True)
        self.source = source
        self.revocations: List[Tuple[str, str, str, Optional[str]]] = []
        self.access_changes: List[Tuple[str, str, str, str, str]] = []
        self.failing_users: Set[str] = set()

    def revoke_access(self, tenant_id: str, user_id: str, app_id: str,
                      access_type: Optional[str] = None) -> ConnectorResult:
        if user_id in self.failing_users:
            return ConnectorResult(False, f"Revocation failed for {user_id}",
                                   error="access-link API unavailable")

        self.revocations.append((tenant_id, user_id, app_id, access_type))
        if self.source:
            self.source.remove_grant(tenant_id, user_id, app_id, access_type)

        logger.info(f"Mock revoked {app_id}:{access_type or '*'} from {user_id} in {tenant_id}")
        return ConnectorResult(True, f"Revoked {app_id} from {user_id}")

    def change_access(self, tenant_id: str, user_id: str, app_id: str,
                      current_access: str, new_access: str) -> ConnectorResult:
        if user_id in self.failing_users:
            return ConnectorResult(False, f"Access change failed for {user_id}",
                                   error="access-link API unavailable")

        self.access_changes.append((tenant_id, user_id, app_id, current_access, new_access))
        if self.source:
            for grant in self.source.list_grants(tenant_id, user_id):
                if grant.app_id == app_id and grant.access_type == current_access:
                    self.source.remove_grant(tenant_id, user_id, app_id, current_access)
                    self.source.add_grant(grant.model_copy(update={"access_type": new_access}))

        logger.info(f"Mock changed {app_id} for {user_id} from {current_access} to {new_access}")
        return ConnectorResult(True, f"Changed {app_id} to {new_access} for {user_id}")


class MockNotificationGateway(NotificationGateway):
    """In-memory notification gateway that records every delivered message."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config, mock_mode=True)
        self.sent: List[Dict[str, Any]] = []
        self.failing_recipients: Set[str] = set()

    def send(self, tenant_id: str, recipient_id: str, subject: str, body: str,
             metadata: Optional[Dict[str, Any]] = None) -> ConnectorResult:
        if recipient_id in self.failing_recipients:
            return ConnectorResult(False, f"Delivery to {recipient_id} failed",
                                   error="notification gateway rejected message")

        self.sent.append({
            "tenant_id": tenant_id,
            "recipient_id": recipient_id,
            "subject": subject,
            "body": body,
            "metadata": metadata or {},
            "sent_at": utcnow(),
        })
        logger.info(f"Mock sent '{subject}' to {recipient_id}")
        return ConnectorResult(True, f"Sent to {recipient_id}")

    def messages_for(self, recipient_id: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["recipient_id"] == recipient_id]
