"""
Error taxonomy for the Governance Engine.

Policy violations and state-machine conflicts are raised to the caller;
downstream failures are raised by connectors and isolated per tenant by
the orchestrator.
"""

from typing import Optional


class GovernanceError(Exception):
    """Base class for all engine errors."""


class RecordNotFound(GovernanceError):
    """A campaign, item, alert or violation does not exist for the tenant."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class DuplicateActiveCampaign(GovernanceError):
    """An active campaign of the same type already covers the tenant."""

    def __init__(self, tenant_id: str, campaign_type: str, existing_id: str):
        super().__init__(
            f"Tenant {tenant_id} already has active {campaign_type} campaign {existing_id}"
        )
        self.tenant_id = tenant_id
        self.campaign_type = campaign_type
        self.existing_id = existing_id


class CampaignNotActive(GovernanceError):
    """A mutation was attempted on a completed or cancelled campaign."""


class ConcurrentDecisionConflict(GovernanceError):
    """The review item was already decided."""


class InvalidTransition(GovernanceError):
    """A status change not allowed by the record's state machine."""


class DownstreamUnavailable(GovernanceError):
    """The entitlement source or role policy store could not be read."""

    def __init__(self, source: str, message: str, tenant_id: Optional[str] = None):
        super().__init__(f"{source} unavailable: {message}")
        self.source = source
        self.tenant_id = tenant_id


class NotificationDeliveryFailed(GovernanceError):
    """A reminder or escalation could not be delivered. Never blocks state changes."""

    def __init__(self, recipient: str, message: str):
        super().__init__(f"Delivery to {recipient} failed: {message}")
        self.recipient = recipient
