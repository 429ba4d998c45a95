"""
HTTP Connectors for the Governance Engine.

Talks to the identity platform over its REST API: reads users and grants
from the entitlement source, posts revocations to the access-link API and
hands messages to the notification service.
"""

import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from ..errors import DownstreamUnavailable
from ..models import EntitlementGrant, UserProfile
from .base_connector import (
    AccessLinkConnector,
    ConnectorResult,
    EntitlementSource,
    NotificationGateway,
)

logger = logging.getLogger(__name__)


class _HttpMixin:
    """Shared session handling for the REST connectors."""

    base_url_key = ""

    def _init_session(self, config: Dict[str, Any]):
        base_url = config.get(self.base_url_key)
        if not base_url:
            raise ValueError(f"{self.base_url_key} is required for real mode")

        self.base_url = base_url.rstrip("/")
        self.timeout = config.get("timeout_seconds", 10.0)
        self.session = requests.Session()
        token = config.get("api_token")
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        self.session.headers["Accept"] = "application/json"

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        response = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response


class HttpEntitlementSource(_HttpMixin, EntitlementSource):
    """Entitlement source backed by the identity platform's REST API."""

    base_url_key = "entitlement_source_url"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config, mock_mode=False)
        self._init_session(self.config)

    def validate_config(self) -> bool:
        return bool(self.config.get(self.base_url_key))

    def list_tenants(self) -> List[str]:
        try:
            data = self._get("/tenants")
        except (requests.RequestException, ValueError) as e:
            raise DownstreamUnavailable("entitlement source", str(e)) from e
        return [t["id"] if isinstance(t, dict) else str(t) for t in data]

    def list_users(self, tenant_id: str) -> List[UserProfile]:
        try:
            data = self._get(f"/tenants/{tenant_id}/users")
            return [UserProfile.model_validate({**raw, "tenant_id": tenant_id}) for raw in data]
        except (requests.RequestException, ValidationError, ValueError, TypeError) as e:
            raise DownstreamUnavailable("entitlement source", str(e), tenant_id) from e

    def list_grants(self, tenant_id: str, user_id: Optional[str] = None) -> List[EntitlementGrant]:
        params = {"user_id": user_id} if user_id else None
        try:
            data = self._get(f"/tenants/{tenant_id}/grants", params=params)
            grants = [EntitlementGrant.model_validate({**raw, "tenant_id": tenant_id}) for raw in data]
        except (requests.RequestException, ValidationError, ValueError, TypeError) as e:
            raise DownstreamUnavailable("entitlement source", str(e), tenant_id) from e

        logger.debug(f"Fetched {len(grants)} grants for tenant {tenant_id}")
        return grants


class HttpAccessLinkConnector(_HttpMixin, AccessLinkConnector):
    """Posts revocation requests to the access-link API."""

    base_url_key = "access_link_url"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config, mock_mode=False)
        self._init_session(self.config)

    def revoke_access(self, tenant_id: str, user_id: str, app_id: str,
                      access_type: Optional[str] = None) -> ConnectorResult:
        payload = {"user_id": user_id, "app_id": app_id, "access_type": access_type}
        try:
            response = self._post(f"/tenants/{tenant_id}/revocations", payload)
        except requests.RequestException as e:
            error_msg = f"Failed to revoke {app_id} from {user_id}: {e}"
            logger.error(error_msg)
            return ConnectorResult(False, error_msg, error=str(e))

        logger.info(f"Revoked {app_id}:{access_type or '*'} from {user_id} in {tenant_id}")
        data = response.json() if response.content else None
        return ConnectorResult(True, f"Revoked {app_id} from {user_id}", data)

    def change_access(self, tenant_id: str, user_id: str, app_id: str,
                      current_access: str, new_access: str) -> ConnectorResult:
        payload = {
            "user_id": user_id,
            "app_id": app_id,
            "current_access": current_access,
            "new_access": new_access,
        }
        try:
            self._post(f"/tenants/{tenant_id}/access-changes", payload)
        except requests.RequestException as e:
            error_msg = f"Failed to change {app_id} access for {user_id}: {e}"
            logger.error(error_msg)
            return ConnectorResult(False, error_msg, error=str(e))

        logger.info(f"Changed {app_id} for {user_id} in {tenant_id} from {current_access} to {new_access}")
        return ConnectorResult(True, f"Changed {app_id} to {new_access} for {user_id}")


class HttpNotificationGateway(_HttpMixin, NotificationGateway):
    """Hands messages to the notification service."""

    base_url_key = "notification_url"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config, mock_mode=False)
        self._init_session(self.config)

    def send(self, tenant_id: str, recipient_id: str, subject: str, body: str,
             metadata: Optional[Dict[str, Any]] = None) -> ConnectorResult:
        payload = {
            "tenant_id": tenant_id,
            "recipient_id": recipient_id,
            "subject": subject,
            "body": body,
            "metadata": metadata or {},
        }
        try:
            self._post("/notifications", payload)
        except requests.RequestException as e:
            logger.warning(f"Notification to {recipient_id} failed: {e}")
            return ConnectorResult(False, f"Delivery to {recipient_id} failed", error=str(e))

        return ConnectorResult(True, f"Sent to {recipient_id}")
