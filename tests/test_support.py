"""
Tests for configuration, persistence, policy loading, audit and connectors.
"""

import json
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests
import yaml
from pydantic import ValidationError

from conftest import NOW, TENANT, make_grant, make_user
from governance_engine.audit import AuditLogger, EventBus
from governance_engine.campaigns import CampaignEngine
from governance_engine.config import GovernanceConfig, load_config
from governance_engine.connectors import (
    HttpAccessLinkConnector,
    HttpEntitlementSource,
    MockAccessLinkConnector,
    MockEntitlementSource,
    build_connectors,
)
from governance_engine.engine import GovernanceStore, RolePolicyStore
from governance_engine.errors import DownstreamUnavailable, RecordNotFound
from governance_engine.models import (
    AccessReviewCampaign,
    CampaignConfig,
    CampaignType,
    EntitlementGrant,
    ReviewItem,
    ScopeType,
)
from governance_engine.service import GovernanceService


class TestConfig:

    def test_defaults(self):
        config = load_config()

        assert config.mock_mode is True
        assert config.overprivileged_threshold == 3
        assert config.reminder_days == [7, 3, 1]
        assert config.escalation_days == [3, 7, 14]
        assert config.overprivileged_weekday_index == 0

    def test_yaml_and_overrides(self, tmp_path):
        path = tmp_path / "governance.yaml"
        path.write_text(yaml.safe_dump({
            "overprivileged_threshold": 5,
            "overprivileged_scan_weekday": "Friday",
            "connectors": {"entitlement_source_url": "https://idp.example.com"},
        }))

        config = load_config(path, {"stale_access_days": 30})

        assert config.overprivileged_threshold == 5
        assert config.overprivileged_weekday_index == 4
        assert config.stale_access_days == 30
        assert config.connectors.entitlement_source_url == "https://idp.example.com"

    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_config(tmp_path / "absent.yaml").audit_dir == "audit"

    def test_invalid_weekday(self):
        with pytest.raises(ValidationError):
            GovernanceConfig(overprivileged_scan_weekday="someday")


class TestGovernanceStore:

    def test_state_survives_restart(self, tmp_path):
        path = tmp_path / "state.json"
        store = GovernanceStore(path)
        campaign = AccessReviewCampaign(
            tenant_id=TENANT, name="Review", campaign_type=CampaignType.AD_HOC,
            scope_type=ScopeType.ALL, start_date=NOW, due_date=NOW,
        )
        store.save_campaign(campaign)
        store.add_review_item_if_absent(ReviewItem(
            tenant_id=TENANT, campaign_id=campaign.id, user_id="alice", app_id="crm", access_type="read",
        ))
        store.set_job_run(TENANT, "drift_scan", "2026-10-19")
        store.record_notification("reminder:x:2026-10-19")

        reloaded = GovernanceStore(path)

        assert reloaded.get_campaign(TENANT, campaign.id).name == "Review"
        assert len(reloaded.list_review_items(TENANT, campaign.id)) == 1
        assert reloaded.get_job_run(TENANT, "drift_scan").last_run_period == "2026-10-19"
        assert reloaded.has_notification("reminder:x:2026-10-19")
        duplicate = ReviewItem(
            tenant_id=TENANT, campaign_id=campaign.id, user_id="alice", app_id="crm", access_type="read",
        )
        assert reloaded.add_review_item_if_absent(duplicate) is False

    def test_batch_writes_state_once(self, tmp_path):
        path = tmp_path / "state.json"
        store = GovernanceStore(path)

        with patch("governance_engine.engine.state_manager.json.dump", wraps=json.dump) as dump:
            with store.batch():
                with store.batch():
                    for app_id in ("crm", "erp", "hr"):
                        store.add_review_item_if_absent(ReviewItem(
                            tenant_id=TENANT, campaign_id="c-1", user_id="alice", app_id=app_id,
                            access_type="read",
                        ))
                assert dump.call_count == 0

        assert dump.call_count == 1
        assert len(GovernanceStore(path).list_review_items(TENANT, "c-1")) == 3

    def test_generating_items_saves_once(self, tmp_path, source, notifier, access_link, config):
        for user_id in ("alice", "bob"):
            source.add_user(make_user(user_id))
            for app_id in ("crm", "erp", "hr"):
                source.add_grant(make_grant(user_id, app_id, "read"))
        store = GovernanceStore(tmp_path / "state.json")
        engine = CampaignEngine(source=source, store=store, notifier=notifier, access_link=access_link,
                                config=config)
        campaign_id = engine.create_campaign(TENANT, CampaignConfig(
            name="Review", scope_type=ScopeType.ALL, start_date=NOW, due_date=NOW + timedelta(days=30),
        ))

        with patch("governance_engine.engine.state_manager.json.dump", wraps=json.dump) as dump:
            created = engine.generate_review_items(TENANT, campaign_id)

        assert created == 6
        assert dump.call_count == 1

    def test_lookups_do_not_cross_tenants(self, store):
        campaign = AccessReviewCampaign(
            tenant_id=TENANT, name="Review", campaign_type=CampaignType.AD_HOC,
            scope_type=ScopeType.ALL, start_date=NOW, due_date=NOW,
        )
        store.save_campaign(campaign)

        assert store.get_campaign("globex", campaign.id) is None
        assert store.list_campaigns("globex") == []

    def test_notification_ledger(self, store):
        assert store.record_notification("k") is True
        assert store.record_notification("k") is False


class TestRolePolicyStore:

    def test_packaged_policy(self):
        policy = RolePolicyStore()

        template = policy.get_template_for_user(make_user("alice", department="finance"))

        assert template.id == "finance-analyst"
        assert policy.get_active_sod_rules(TENANT)

    def test_tenant_section_overrides_default(self, tmp_path):
        (tmp_path / "role_templates.yaml").write_text(yaml.safe_dump({
            "default": {"role_templates": [{"id": "eng", "name": "Engineer", "department": "Engineering"}]},
            "tenants": {"globex": {"role_templates": [
                {"id": "eng-globex", "name": "Engineer", "department": "Engineering"},
            ]}},
        }))
        policy = RolePolicyStore(tmp_path)

        assert [t.id for t in policy.list_role_templates(TENANT)] == ["eng"]
        assert [t.id for t in policy.list_role_templates("globex")] == ["eng-globex"]
        assert policy.get_active_sod_rules(TENANT) == []

    def test_unknown_template_reference(self, policy_store):
        user = make_user("alice", department="Finance", role_template_id="nope")

        assert policy_store.get_template_for_user(user) is None

    def test_set_rule_active_unknown(self, policy_store):
        with pytest.raises(RecordNotFound):
            policy_store.set_rule_active(TENANT, "missing", False)

    def test_malformed_yaml(self, tmp_path):
        (tmp_path / "sod_rules.yaml").write_text("default: [unclosed")

        with pytest.raises(DownstreamUnavailable):
            RolePolicyStore(tmp_path)


class TestAuditLogger:

    def test_record_and_query(self, tmp_path):
        audit = AuditLogger(tmp_path)
        audit.record(TENANT, "review_decision", "mgr", "item-1", "approved crm:read", campaign_id="c-1")
        audit.record(TENANT, "revoke", "mgr", "item-2", "Revoke crm", success=False, error_message="timeout")
        audit.record("globex", "revoke", "mgr", "item-3", "Revoke crm")

        events = audit.get_events(tenant_id=TENANT)

        assert [e.subject for e in events] == ["item-2", "item-1"]
        assert events[1].metadata == {"campaign_id": "c-1"}
        assert audit.get_events(tenant_id=TENANT, subject="item-1")[0].event_type == "review_decision"

        stats = audit.get_statistics(TENANT)
        assert stats["total_events"] == 2
        assert stats["failed_events"] == 1
        assert stats["events_by_type"] == {"review_decision": 1, "revoke": 1}


class TestEventBus:

    def test_failing_handler_is_isolated(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("subscriber down")

        bus.subscribe("drift.alert_created", broken)
        bus.subscribe("*", received.append)

        event = bus.emit("drift.alert_created", TENANT, {"alertId": "a-1"})

        assert received == [event]
        assert bus.events("drift.alert_created", TENANT) == [event]

    def test_history_keeps_most_recent_events(self, tmp_path):
        bus = EventBus(tmp_path, history_size=3)

        for i in range(5):
            bus.emit("compliance.check_completed", TENANT, {"run": i})

        assert [e.payload["run"] for e in bus.events()] == [2, 3, 4]
        lines = next(tmp_path.glob("events_*.jsonl")).read_text().splitlines()
        assert len(lines) == 5

    def test_service_sizes_history_from_config(self, tmp_path):
        config = GovernanceConfig(audit_dir=str(tmp_path / "audit"), event_history_size=2)

        assert GovernanceService(config).event_bus.history.maxlen == 2

    def test_events_written_to_log(self, tmp_path):
        bus = EventBus(tmp_path)

        bus.emit("sod.violation_created", TENANT, {"violationId": "v-1"})

        lines = next(tmp_path.glob("events_*.jsonl")).read_text().splitlines()
        assert json.loads(lines[0])["payload"] == {"violationId": "v-1"}


class TestMockConnectors:

    def test_load_snapshot(self, tmp_path):
        path = tmp_path / "snapshot.json"
        path.write_text(json.dumps({
            TENANT: {
                "users": [{"user_id": "alice", "department": "Finance"}],
                "grants": [
                    {"user_id": "alice", "app_id": "crm", "access_type": "Admin"},
                    {"user_id": "alice", "app_id": "crm", "access_type": "admin"},
                ],
            },
        }))
        source = MockEntitlementSource()

        source.load_snapshot(path)

        assert source.list_tenants() == [TENANT]
        assert source.get_user(TENANT, "alice").department == "Finance"
        assert len(source.list_grants(TENANT)) == 1

    def test_unreadable_snapshot(self, tmp_path):
        with pytest.raises(DownstreamUnavailable):
            MockEntitlementSource().load_snapshot(tmp_path / "missing.json")

    def test_revocation_applied_to_source(self):
        source = MockEntitlementSource()
        source.add_grant(make_grant("alice", "crm", "admin"))
        link = MockAccessLinkConnector(source=source)

        result = link.revoke_access(TENANT, "alice", "crm", "admin")

        assert result.success
        assert source.list_grants(TENANT) == []

    def test_access_change_applied_to_source(self):
        source = MockEntitlementSource()
        source.add_grant(make_grant("alice", "crm", "admin"))
        source.add_grant(make_grant("alice", "erp", "admin"))
        link = MockAccessLinkConnector(source=source)

        result = link.change_access(TENANT, "alice", "crm", "admin", "member")

        assert result.success
        assert link.access_changes == [(TENANT, "alice", "crm", "admin", "member")]
        assert {(g.app_id, g.access_type) for g in source.list_grants(TENANT)} == {
            ("crm", "member"), ("erp", "admin"),
        }

    def test_access_change_for_failing_user(self):
        source = MockEntitlementSource()
        source.add_grant(make_grant("alice", "crm", "admin"))
        link = MockAccessLinkConnector(source=source)
        link.failing_users.add("alice")

        result = link.change_access(TENANT, "alice", "crm", "admin", "member")

        assert not result.success
        assert link.access_changes == []
        assert source.list_grants(TENANT)[0].access_type == "admin"

    def test_build_connectors_mock_mode(self):
        source, access_link, _ = build_connectors(GovernanceConfig())

        assert isinstance(source, MockEntitlementSource)
        assert access_link.source is source


class TestHttpConnectors:

    SETTINGS = {
        "entitlement_source_url": "https://idp.example.com/api/",
        "access_link_url": "https://idp.example.com/api",
        "api_token": "secret",
    }

    def test_requires_base_url(self):
        with pytest.raises(ValueError):
            HttpEntitlementSource({})

    @patch("governance_engine.connectors.http_connector.requests.Session")
    def test_list_grants(self, mock_session_cls):
        response = MagicMock()
        response.json.return_value = [{"user_id": "alice", "app_id": "crm", "access_type": "write"}]
        mock_session = mock_session_cls.return_value
        mock_session.headers = {}
        mock_session.get.return_value = response

        source = HttpEntitlementSource(self.SETTINGS)
        grants = source.list_grants(TENANT, "alice")

        assert grants == [EntitlementGrant(tenant_id=TENANT, user_id="alice", app_id="crm", access_type="write")]
        mock_session.get.assert_called_once_with(
            "https://idp.example.com/api/tenants/acme/grants", params={"user_id": "alice"}, timeout=10.0
        )
        assert mock_session.headers["Authorization"] == "Bearer secret"

    @patch("governance_engine.connectors.http_connector.requests.Session")
    def test_payload_tenant_is_replaced_by_requested_tenant(self, mock_session_cls):
        response = MagicMock()
        response.json.return_value = [
            {"tenant_id": "globex", "user_id": "alice", "app_id": "crm", "access_type": "write"},
        ]
        mock_session = mock_session_cls.return_value
        mock_session.headers = {}
        mock_session.get.return_value = response

        grants = HttpEntitlementSource(self.SETTINGS).list_grants(TENANT)

        assert [g.tenant_id for g in grants] == [TENANT]

    @patch("governance_engine.connectors.http_connector.requests.Session")
    def test_malformed_payload_raises_downstream_unavailable(self, mock_session_cls):
        response = MagicMock()
        response.json.return_value = [{"user_id": "alice"}]
        mock_session = mock_session_cls.return_value
        mock_session.headers = {}
        mock_session.get.return_value = response

        source = HttpEntitlementSource(self.SETTINGS)

        with pytest.raises(DownstreamUnavailable):
            source.list_grants(TENANT)
        response.json.return_value = ["alice"]
        with pytest.raises(DownstreamUnavailable):
            source.list_users(TENANT)

    @patch("governance_engine.connectors.http_connector.requests.Session")
    def test_outage_raises_downstream_unavailable(self, mock_session_cls):
        mock_session = mock_session_cls.return_value
        mock_session.headers = {}
        mock_session.get.side_effect = requests.ConnectionError("refused")

        source = HttpEntitlementSource(self.SETTINGS)

        with pytest.raises(DownstreamUnavailable) as exc_info:
            source.list_users(TENANT)
        assert exc_info.value.tenant_id == TENANT

    @patch("governance_engine.connectors.http_connector.requests.Session")
    def test_failed_revocation_returns_result(self, mock_session_cls):
        mock_session = mock_session_cls.return_value
        mock_session.headers = {}
        mock_session.post.side_effect = requests.Timeout("slow")

        result = HttpAccessLinkConnector(self.SETTINGS).revoke_access(TENANT, "alice", "crm", "admin")

        assert not result.success
        assert "slow" in result.error

    @patch("governance_engine.connectors.http_connector.requests.Session")
    def test_change_access_posts_downgrade(self, mock_session_cls):
        mock_session = mock_session_cls.return_value
        mock_session.headers = {}

        result = HttpAccessLinkConnector(self.SETTINGS).change_access(TENANT, "alice", "crm", "admin", "member")

        assert result.success
        mock_session.post.assert_called_once_with(
            "https://idp.example.com/api/tenants/acme/access-changes",
            json={"user_id": "alice", "app_id": "crm", "current_access": "admin", "new_access": "member"},
            timeout=10.0,
        )

    @patch("governance_engine.connectors.http_connector.requests.Session")
    def test_failed_access_change_returns_result(self, mock_session_cls):
        mock_session = mock_session_cls.return_value
        mock_session.headers = {}
        mock_session.post.side_effect = requests.HTTPError("502 Bad Gateway")

        result = HttpAccessLinkConnector(self.SETTINGS).change_access(TENANT, "alice", "crm", "admin", "member")

        assert not result.success
        assert "502" in result.error
