"""
Tests for the Overprivileged Account Detector.
"""

from datetime import timedelta

import pytest

from conftest import NOW, TENANT, make_grant, make_user
from governance_engine.detectors import OverprivilegedAccountDetector
from governance_engine.errors import InvalidTransition, RecordNotFound
from governance_engine.models import OverprivilegedStatus, RemediationAction, RiskLevel, utcnow


def grant_admin(source, user_id, count, access_type="admin", last_used_at=None):
    for i in range(count):
        source.add_grant(make_grant(user_id, f"app-{i}", access_type, last_used_at=last_used_at))


class TestEvaluateUser:

    def test_below_threshold_is_not_flagged(self, overprivileged_detector):
        user = make_user("alice")
        grants = [make_grant("alice", "crm", "admin"), make_grant("alice", "erp", "admin")]

        assert overprivileged_detector.evaluate_user(user, grants, NOW) is None

    def test_threshold_counts_distinct_apps(self, overprivileged_detector):
        """Two admin-rank grants on the same app count once."""
        user = make_user("alice")
        grants = [
            make_grant("alice", "crm", "admin"),
            make_grant("alice", "crm", "owner"),
            make_grant("alice", "erp", "admin"),
            make_grant("alice", "wiki", "write"),
        ]

        assert overprivileged_detector.evaluate_user(user, grants, NOW) is None

    def test_three_admin_apps_is_medium(self, overprivileged_detector):
        user = make_user("alice")
        grants = [make_grant("alice", app, "admin") for app in ("crm", "erp", "hr")]

        result = overprivileged_detector.evaluate_user(user, grants, NOW)

        assert result.admin_app_count == 3
        assert result.risk_score == 30
        assert result.risk_level == RiskLevel.MEDIUM
        assert result.risk_factors == ["Admin access to 3 apps"]
        assert [a.app_id for a in result.admin_apps] == ["crm", "erp", "hr"]

    def test_eight_admin_apps_is_critical(self, overprivileged_detector):
        user = make_user("alice")
        grants = [make_grant("alice", f"app-{i}", "admin") for i in range(8)]

        result = overprivileged_detector.evaluate_user(user, grants, NOW)

        assert result.risk_score == 80
        assert result.risk_level == RiskLevel.CRITICAL
        assert result.recommended_action.startswith("Critical")

    def test_score_caps_at_100(self, overprivileged_detector):
        user = make_user("alice")
        grants = [make_grant("alice", f"app-{i}", "admin") for i in range(15)]

        assert overprivileged_detector.evaluate_user(user, grants, NOW).risk_score == 100

    def test_stale_admin_access_adds_factor_only(self, overprivileged_detector):
        user = make_user("alice")
        stale = NOW - timedelta(days=120)
        grants = [
            make_grant("alice", "crm", "admin", last_used_at=stale),
            make_grant("alice", "erp", "admin", last_used_at=NOW - timedelta(days=2)),
            make_grant("alice", "hr", "admin"),
        ]

        result = overprivileged_detector.evaluate_user(user, grants, NOW)

        assert result.risk_score == 30
        assert result.stale_admin_count == 1
        assert "1 stale admin account (90+ days unused)" in result.risk_factors
        crm = next(a for a in result.admin_apps if a.app_id == "crm")
        assert crm.days_since_last_use == 120

    def test_stale_admin_apps_are_recommended_for_downgrade(self, overprivileged_detector):
        user = make_user("alice")
        stale = NOW - timedelta(days=90)
        grants = [
            make_grant("alice", "crm", "admin", last_used_at=stale),
            make_grant("alice", "erp", "owner", last_used_at=stale),
            make_grant("alice", "hr", "admin", last_used_at=NOW - timedelta(days=89)),
        ]

        result = overprivileged_detector.evaluate_user(user, grants, NOW)

        assert [(a.app_id, a.current_access, a.recommended_access)
                for a in result.recommended_apps_to_downgrade] == [
            ("crm", "admin", "member"),
            ("erp", "owner", "member"),
        ]

    @pytest.mark.parametrize("count, alternative", [
        (3, "Downgrade to standard user and elevate on-demand with MFA verification"),
        (7, "Use approval workflows for admin actions instead of permanent admin access"),
        (10, "Implement Just-In-Time (JIT) access with 8-hour admin sessions instead of permanent admin rights"),
    ])
    def test_least_privilege_alternative(self, overprivileged_detector, count, alternative):
        grants = [make_grant("alice", f"app-{i}", "admin") for i in range(count)]

        result = overprivileged_detector.evaluate_user(make_user("alice"), grants, NOW)

        assert result.least_privilege_alternative == alternative

    def test_custom_threshold(self, detector_kwargs):
        detector_kwargs["config"].overprivileged_threshold = 2
        detector = OverprivilegedAccountDetector(**detector_kwargs)
        grants = [make_grant("alice", "crm", "admin"), make_grant("alice", "erp", "admin")]

        assert detector.evaluate_user(make_user("alice"), grants, NOW) is not None


class TestOverprivilegedRecords:

    @pytest.fixture(autouse=True)
    def seed(self, source):
        source.add_user(make_user("alice"))
        source.add_user(make_user("bob"))
        source.add_user(make_user("carol", is_active=False))
        grant_admin(source, "alice", 3)
        grant_admin(source, "bob", 6)
        grant_admin(source, "carol", 9)

    def test_scan_sorts_by_score(self, overprivileged_detector):
        results = overprivileged_detector.scan_all(TENANT, NOW)

        assert [r.user_id for r in results] == ["bob", "alice"]

    def test_sync_upserts_one_record_per_user(self, overprivileged_detector, store, event_bus):
        first = overprivileged_detector.sync_records(TENANT, NOW)
        second = overprivileged_detector.sync_records(TENANT, NOW)

        assert first == {"overprivileged_created": 2, "overprivileged_updated": 0,
                         "overprivileged_accepted": 0, "overprivileged_closed": 0}
        assert second == {"overprivileged_created": 0, "overprivileged_updated": 2,
                          "overprivileged_accepted": 0, "overprivileged_closed": 0}
        assert len(store.list_overprivileged(TENANT)) == 2
        assert len(event_bus.events("overprivileged.record_created")) == 2

    def test_record_tracks_current_footprint(self, overprivileged_detector, source, store):
        overprivileged_detector.sync_records(TENANT, NOW)
        source.add_grant(make_grant("alice", "extra", "admin"))

        overprivileged_detector.sync_records(TENANT, NOW)

        record = store.find_open_overprivileged(TENANT, "alice")
        assert record.admin_app_count == 4
        assert record.risk_score == 40

    def test_resolve_record(self, overprivileged_detector, store):
        overprivileged_detector.sync_records(TENANT, NOW)
        record = store.find_open_overprivileged(TENANT, "alice")

        resolved = overprivileged_detector.resolve_record(TENANT, record.id, "admin-1", "downgraded")

        assert resolved.status == OverprivilegedStatus.RESOLVED
        assert resolved.resolution_notes == "downgraded"
        with pytest.raises(InvalidTransition):
            overprivileged_detector.resolve_record(TENANT, record.id, "admin-1")

    def test_unknown_record(self, overprivileged_detector):
        with pytest.raises(RecordNotFound):
            overprivileged_detector.get_record(TENANT, "missing")

    def test_statistics(self, overprivileged_detector, store):
        overprivileged_detector.sync_records(TENANT, NOW)
        record = store.find_open_overprivileged(TENANT, "alice")
        overprivileged_detector.resolve_record(TENANT, record.id, "admin-1")

        stats = overprivileged_detector.get_statistics(TENANT)

        assert stats["total"] == 2
        assert stats["open"] == 1
        assert stats["resolved"] == 1
        assert stats["by_risk_level"]["high"] == 1
        assert stats["average_admin_apps"] == 6.0
        assert stats["remediation_progress"] == 50
        assert stats["by_status"]["resolved"] == 1

    def test_sync_closes_record_below_threshold(self, overprivileged_detector, source, store):
        overprivileged_detector.sync_records(TENANT, NOW)
        record = store.find_open_overprivileged(TENANT, "bob")
        for i in range(6):
            source.remove_grant(TENANT, "bob", f"app-{i}")

        summary = overprivileged_detector.sync_records(TENANT, NOW)

        assert summary == {"overprivileged_created": 0, "overprivileged_updated": 1,
                           "overprivileged_accepted": 0, "overprivileged_closed": 1}
        closed = store.get_overprivileged(TENANT, record.id)
        assert closed.status == OverprivilegedStatus.RESOLVED
        assert closed.resolved_by == "system"
        assert closed.resolution_notes == "Admin footprint no longer above threshold"

    def test_justification_suppresses_record_until_expiry(self, overprivileged_detector, store):
        overprivileged_detector.sync_records(TENANT, NOW)
        record = store.find_open_overprivileged(TENANT, "alice")

        accepted = overprivileged_detector.add_justification(
            TENANT, record.id, "Break-glass admin for finance close", "ciso", NOW + timedelta(days=30)
        )

        assert accepted.status == OverprivilegedStatus.ACCEPTED_RISK
        assert accepted.justification_approved_by == "ciso"
        assert store.find_open_overprivileged(TENANT, "alice") is None

        summary = overprivileged_detector.sync_records(TENANT, NOW + timedelta(days=29))
        assert summary["overprivileged_accepted"] == 1
        assert summary["overprivileged_created"] == 0

        summary = overprivileged_detector.sync_records(TENANT, NOW + timedelta(days=31))
        assert summary["overprivileged_created"] == 1
        assert len(store.find_overprivileged(TENANT, "alice")) == 2

    def test_accept_risk_action(self, overprivileged_detector, store):
        overprivileged_detector.sync_records(TENANT, NOW)
        record = store.find_open_overprivileged(TENANT, "alice")

        accepted = overprivileged_detector.remediate_record(
            TENANT, record.id, RemediationAction.ACCEPT_RISK, "ciso", "Owner of three internal tools"
        )

        assert accepted.status == OverprivilegedStatus.ACCEPTED_RISK
        assert accepted.remediation_plan == "Owner of three internal tools"
        with pytest.raises(InvalidTransition):
            overprivileged_detector.resolve_record(TENANT, record.id, "admin-1")
        assert overprivileged_detector.sync_records(TENANT, NOW)["overprivileged_created"] == 0

    def test_downgrade_needs_stale_apps(self, overprivileged_detector, store, access_link):
        overprivileged_detector.sync_records(TENANT, NOW)
        record = store.find_open_overprivileged(TENANT, "alice")

        with pytest.raises(InvalidTransition):
            overprivileged_detector.remediate_record(TENANT, record.id, RemediationAction.DOWNGRADE, "admin-1")

        assert store.get_overprivileged(TENANT, record.id).status == OverprivilegedStatus.OPEN
        assert access_link.access_changes == []


class TestRemediation:

    @pytest.fixture(autouse=True)
    def seed(self, source):
        source.add_user(make_user("alice"))
        grant_admin(source, "alice", 2, last_used_at=NOW - timedelta(days=120))
        source.add_grant(make_grant("alice", "crm", "admin", last_used_at=NOW - timedelta(days=1)))

    @pytest.fixture
    def record(self, overprivileged_detector, store):
        overprivileged_detector.sync_records(TENANT, NOW)
        return store.find_open_overprivileged(TENANT, "alice")

    def test_record_carries_recommendations(self, record):
        assert [a.app_id for a in record.recommended_apps_to_downgrade] == ["app-0", "app-1"]
        assert record.least_privilege_alternative.startswith("Downgrade to standard user")

    def test_downgrade_changes_access_and_resolves(self, overprivileged_detector, record, access_link,
                                                   source, audit_logger):
        remediated = overprivileged_detector.remediate_record(
            TENANT, record.id, RemediationAction.DOWNGRADE, "admin-1"
        )

        assert remediated.status == OverprivilegedStatus.RESOLVED
        assert remediated.remediation_action == RemediationAction.DOWNGRADE
        assert remediated.resolution_notes == "Downgraded 2 apps to standard user access"
        assert access_link.access_changes == [
            (TENANT, "alice", "app-0", "admin", "member"),
            (TENANT, "alice", "app-1", "admin", "member"),
        ]
        assert {(g.app_id, g.access_type) for g in source.list_grants(TENANT, "alice")} == {
            ("app-0", "member"), ("app-1", "member"), ("crm", "admin"),
        }
        assert len(audit_logger.get_events(tenant_id=TENANT, event_type="access_change")) == 2

    def test_downgraded_user_is_not_flagged_again(self, overprivileged_detector, record):
        overprivileged_detector.remediate_record(TENANT, record.id, RemediationAction.DOWNGRADE, "admin-1")

        summary = overprivileged_detector.sync_records(TENANT, NOW)

        assert summary["overprivileged_created"] == 0
        assert summary["overprivileged_closed"] == 0

    def test_failed_downgrade_stays_in_remediation(self, overprivileged_detector, record, access_link,
                                                   audit_logger):
        access_link.failing_users.add("alice")

        remediated = overprivileged_detector.remediate_record(
            TENANT, record.id, RemediationAction.DOWNGRADE, "admin-1"
        )

        assert remediated.status == OverprivilegedStatus.IN_REMEDIATION
        assert remediated.resolved_at is None
        failed = [e for e in audit_logger.get_events(tenant_id=TENANT, event_type="access_change") if not e.success]
        assert len(failed) == 2

    def test_jit_sets_deadline(self, overprivileged_detector, record, store):
        remediated = overprivileged_detector.remediate_record(
            TENANT, record.id, RemediationAction.IMPLEMENT_JIT, "admin-1", "Move to 8h elevation"
        )

        assert remediated.status == OverprivilegedStatus.IN_REMEDIATION
        assert remediated.remediation_plan == "Move to 8h elevation"
        assert timedelta(days=29) < remediated.remediation_deadline - utcnow() <= timedelta(days=30)
        assert store.find_open_overprivileged(TENANT, "alice").id == record.id

        stats = overprivileged_detector.get_statistics(TENANT)
        assert stats["open"] == 1
        assert stats["by_status"]["in_remediation"] == 1

    def test_in_remediation_record_is_updated_by_scans(self, overprivileged_detector, record):
        overprivileged_detector.remediate_record(TENANT, record.id, RemediationAction.REQUIRE_MFA, "admin-1")

        summary = overprivileged_detector.sync_records(TENANT, NOW)

        assert summary["overprivileged_updated"] == 1
        assert summary["overprivileged_created"] == 0

    def test_remediation_recommendation(self, overprivileged_detector, record):
        recommendation = overprivileged_detector.get_remediation_recommendation(TENANT, record.id)

        assert [a["app_id"] for a in recommendation["apps_to_downgrade"]] == ["app-0", "app-1"]
        assert recommendation["apps_to_downgrade"][0]["reason"] == \
            "Unused for 90+ days - downgrade to reduce risk"
        assert recommendation["estimated_risk_reduction"] == 20

    def test_resolved_record_cannot_be_remediated(self, overprivileged_detector, record):
        overprivileged_detector.resolve_record(TENANT, record.id, "admin-1")

        with pytest.raises(InvalidTransition):
            overprivileged_detector.remediate_record(TENANT, record.id, RemediationAction.REQUIRE_MFA, "admin-1")
        with pytest.raises(InvalidTransition):
            overprivileged_detector.add_justification(TENANT, record.id, "n/a", "ciso")
