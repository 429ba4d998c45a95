"""
Connectors Package for the Governance Engine.

This package provides the entitlement source, access-link and notification
integrations, each with an in-memory mock backend.
"""

from typing import Tuple

from ..config import GovernanceConfig
from .base_connector import (
    AccessLinkConnector,
    BaseConnector,
    ConnectorResult,
    EntitlementSource,
    MockAccessLinkConnector,
    MockEntitlementSource,
    MockNotificationGateway,
    NotificationGateway,
)
from .http_connector import HttpAccessLinkConnector, HttpEntitlementSource, HttpNotificationGateway


def build_connectors(
    config: GovernanceConfig,
) -> Tuple[EntitlementSource, AccessLinkConnector, NotificationGateway]:
    """
    Build the connector set for the configured mode.

    In mock mode the access-link connector is wired to the mock source, so
    revocations are visible on the next read.
    """
    if config.mock_mode:
        source = MockEntitlementSource()
        if config.snapshot_file:
            source.load_snapshot(config.snapshot_file)
        return source, MockAccessLinkConnector(source=source), MockNotificationGateway()

    settings = config.connectors.model_dump()
    return (
        HttpEntitlementSource(settings),
        HttpAccessLinkConnector(settings),
        HttpNotificationGateway(settings),
    )


__all__ = [
    "AccessLinkConnector",
    "BaseConnector",
    "ConnectorResult",
    "EntitlementSource",
    "HttpAccessLinkConnector",
    "HttpEntitlementSource",
    "HttpNotificationGateway",
    "MockAccessLinkConnector",
    "MockEntitlementSource",
    "MockNotificationGateway",
    "NotificationGateway",
    "build_connectors",
]
