#!/usr/bin/env python3
"""
Governance Control CLI - Command Line Interface for the Governance Engine.

Provides commands for running the scheduled governance jobs, managing access
review campaigns, and inspecting drift, overprivilege and SoD findings.
"""

import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..campaigns.scope import SCOPE_KEYS
from ..config import load_config
from ..errors import GovernanceError
from ..models import (
    BatchReport,
    CampaignConfig,
    CampaignStatus,
    CampaignType,
    ReviewDecision,
    RiskLevel,
    ScopeType,
    ViolationStatus,
    utcnow,
)
from ..scheduler.orchestrator import JOBS
from ..service import GovernanceService

logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()

RISK_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}


class GovernanceController:
    """Holds the wired engine for one CLI invocation."""

    def __init__(self, config_path: Optional[str] = None, mock_mode: bool = True,
                 tenant_id: str = "default", snapshot: Optional[str] = None):
        overrides: Dict[str, Any] = {"mock_mode": mock_mode}
        if snapshot:
            overrides["snapshot_file"] = snapshot

        self.config = load_config(config_path, overrides)
        self.tenant_id = tenant_id
        self.service = GovernanceService(self.config)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=utcnow().tzinfo)


def _fail(message: str):
    console.print(f"[red]{message}[/red]")
    sys.exit(1)


@click.group()
@click.option('--config', '-c', help='Path to YAML configuration file')
@click.option('--mock/--real', default=True, help='Use mock connectors (default) or real API connections')
@click.option('--tenant', '-t', default='default', envvar='GOVERNANCE_TENANT', help='Tenant to operate on')
@click.option('--snapshot', type=click.Path(exists=True), help='JSON users/grants snapshot for mock mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config, mock, tenant, snapshot, verbose):
    """Governance Control CLI - Access reviews, drift, overprivilege and SoD"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    ctx.ensure_object(dict)
    ctx.obj['controller'] = GovernanceController(config, mock, tenant, snapshot)


@cli.command()
@click.argument('job', type=click.Choice(JOBS + ['all']))
@click.option('--now', help='Clock override (ISO 8601)')
@click.pass_context
def run_job(ctx, job, now):
    """Run a scheduled job (or all jobs) across every tenant."""
    orchestrator = ctx.obj['controller'].service.orchestrator
    moment = _parse_time(now)

    reports = orchestrator.run_all(moment) if job == 'all' else [orchestrator.run_job(job, moment)]
    for report in reports:
        display_batch_report(report)


@cli.command()
@click.option('--status', type=click.Choice([s.value for s in CampaignStatus]), help='Filter by status')
@click.pass_context
def campaigns(ctx, status):
    """List access review campaigns."""
    controller = ctx.obj['controller']
    rows = controller.service.store.list_campaigns(controller.tenant_id, CampaignStatus(status) if status else None)

    if not rows:
        console.print("[yellow]No campaigns found[/yellow]")
        return

    table = Table(title=f"Campaigns ({len(rows)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Due")
    table.add_column("Reviewed", justify="right")

    for campaign in rows:
        table.add_row(
            campaign.id,
            campaign.name,
            campaign.campaign_type.value,
            campaign.status.value,
            campaign.due_date.strftime("%Y-%m-%d"),
            f"{campaign.reviewed_items}/{campaign.total_items}",
        )

    console.print(table)


@cli.command()
@click.option('--name', required=True, help='Campaign name')
@click.option('--type', 'campaign_type', type=click.Choice([t.value for t in CampaignType]),
              default=CampaignType.AD_HOC.value, help='Campaign type')
@click.option('--scope-type', type=click.Choice([s.value for s in ScopeType]), default=ScopeType.ALL.value)
@click.option('--scope', 'scope_values', multiple=True, help='Scope selection value (repeatable)')
@click.option('--days', default=None, type=int, help='Days until the campaign is due')
@click.option('--auto-approve', is_flag=True, help='Approve pending items once overdue')
@click.option('--generate/--no-generate', default=True, help='Generate review items immediately')
@click.pass_context
def create_campaign(ctx, name, campaign_type, scope_type, scope_values, days, auto_approve, generate):
    """Create an access review campaign."""
    controller = ctx.obj['controller']
    engine = controller.service.campaign_engine
    scope = ScopeType(scope_type)
    start = utcnow()

    scope_config = {}
    if scope_values:
        if scope not in SCOPE_KEYS:
            _fail(f"--scope is not used with scope type {scope.value}")
        scope_config[SCOPE_KEYS[scope]] = list(scope_values)

    try:
        config = CampaignConfig(
            name=name,
            campaign_type=CampaignType(campaign_type),
            scope_type=scope,
            scope_config=scope_config,
            start_date=start,
            due_date=start + timedelta(days=days or controller.config.campaign_duration_days),
            auto_approve_on_timeout=auto_approve,
            created_by="govctl",
        )
        campaign_id = engine.create_campaign(controller.tenant_id, config)
        console.print(f"[green]✓ Created campaign {campaign_id}[/green]")

        if generate:
            created = engine.generate_review_items(controller.tenant_id, campaign_id)
            console.print(f"[blue]Generated {created} review items[/blue]")
    except (GovernanceError, ValueError) as e:
        _fail(f"Error creating campaign: {e}")


@cli.command()
@click.argument('campaign_id')
@click.pass_context
def progress(ctx, campaign_id):
    """Show progress of a campaign."""
    controller = ctx.obj['controller']
    try:
        p = controller.service.campaign_engine.get_campaign_progress(controller.tenant_id, campaign_id)
    except GovernanceError as e:
        _fail(str(e))

    overdue = " [red](overdue)[/red]" if p.is_overdue else ""
    console.print(Panel.fit(f"[bold blue]Campaign {p.campaign_id}[/bold blue]\nStatus: {p.status.value}{overdue}"))
    console.print(f"Complete: {p.percent_complete}% ({p.reviewed_items}/{p.total_items})")
    console.print(f"Approved: {p.approved_items}  Revoked: {p.revoked_items}  Deferred: {p.deferred_items}")
    console.print(f"Pending: {p.pending_items}")
    console.print(f"Days remaining: {p.days_remaining}")


@cli.command()
@click.argument('item_id')
@click.argument('decision', type=click.Choice(['approved', 'revoked', 'deferred']))
@click.option('--reviewer', required=True, help='Reviewer id')
@click.option('--notes', help='Decision notes')
@click.pass_context
def decide(ctx, item_id, decision, reviewer, notes):
    """Record a decision on a review item."""
    controller = ctx.obj['controller']
    try:
        item = controller.service.campaign_engine.record_decision(
            controller.tenant_id, item_id, ReviewDecision(decision), reviewer, notes
        )
    except GovernanceError as e:
        _fail(f"Error recording decision: {e}")

    console.print(f"[green]✓ {item.app_id}:{item.access_type} for {item.user_id} {decision}[/green]")
    if item.warning:
        console.print(f"[yellow]Warning: {item.warning}[/yellow]")


@cli.command()
@click.argument('campaign_id')
@click.option('--output', '-o', type=click.Path(), help='Write CSV to this file')
@click.pass_context
def export(ctx, campaign_id, output):
    """Export a campaign's review items as CSV."""
    controller = ctx.obj['controller']
    try:
        csv_data = controller.service.campaign_engine.export_campaign_csv(controller.tenant_id, campaign_id)
    except GovernanceError as e:
        _fail(str(e))

    if output:
        Path(output).write_text(csv_data, encoding="utf-8")
        console.print(f"[green]✓ Exported to {output}[/green]")
    else:
        click.echo(csv_data)


@cli.command()
@click.option('--sync', is_flag=True, help='Persist results as drift alerts')
@click.pass_context
def drift(ctx, sync):
    """Scan for privilege drift."""
    controller = ctx.obj['controller']
    detector = controller.service.drift_detector
    try:
        results = detector.scan_all(controller.tenant_id)
        if sync:
            summary = detector.sync_alerts(controller.tenant_id)
            console.print(f"[blue]{summary}[/blue]")
    except GovernanceError as e:
        _fail(f"Drift scan failed: {e}")

    if not results:
        console.print("[green]No privilege drift found[/green]")
        return

    table = Table(title=f"Privilege Drift ({len(results)})")
    table.add_column("User", style="cyan")
    table.add_column("Role Template")
    table.add_column("Excess")
    table.add_column("Missing")
    table.add_column("Score", justify="right")
    table.add_column("Level")

    for result in results:
        style = RISK_STYLES[result.risk_level]
        table.add_row(
            result.user_id,
            result.role_template_id,
            ", ".join(e.label for e in result.excess_apps) or "-",
            ", ".join(m.label for m in result.missing_apps) or "-",
            str(result.risk_score),
            f"[{style}]{result.risk_level.value}[/{style}]",
        )

    console.print(table)


@cli.command()
@click.pass_context
def overprivileged(ctx):
    """Scan for users with admin access to too many applications."""
    controller = ctx.obj['controller']
    try:
        results = controller.service.overprivileged_detector.scan_all(controller.tenant_id)
    except GovernanceError as e:
        _fail(f"Overprivileged scan failed: {e}")

    if not results:
        console.print("[green]No overprivileged accounts found[/green]")
        return

    table = Table(title=f"Overprivileged Accounts ({len(results)})")
    table.add_column("User", style="cyan")
    table.add_column("Admin Apps", justify="right")
    table.add_column("Stale", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Recommended Action")

    for result in results:
        table.add_row(
            result.user_id,
            str(result.admin_app_count),
            str(result.stale_admin_count),
            str(result.risk_score),
            result.recommended_action,
        )

    console.print(table)


@cli.command()
@click.option('--status', type=click.Choice([s.value for s in ViolationStatus]), help='Filter by status')
@click.option('--evaluate', is_flag=True, help='Evaluate rules before listing')
@click.pass_context
def sod(ctx, status, evaluate):
    """List segregation-of-duties violations."""
    controller = ctx.obj['controller']
    try:
        if evaluate:
            controller.service.sod_evaluator.evaluate(controller.tenant_id)
    except GovernanceError as e:
        _fail(f"SoD evaluation failed: {e}")

    violations = controller.service.store.list_sod_violations(
        controller.tenant_id, ViolationStatus(status) if status else None
    )
    if not violations:
        console.print("[green]No SoD violations found[/green]")
        return

    table = Table(title=f"SoD Violations ({len(violations)})")
    table.add_column("ID", style="cyan")
    table.add_column("Rule")
    table.add_column("User")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Evidence")

    for violation in violations:
        style = RISK_STYLES[violation.severity]
        table.add_row(
            violation.id,
            violation.rule_id,
            violation.user_id,
            f"[{style}]{violation.severity.value}[/{style}]",
            violation.status.value,
            ", ".join(e.label for e in violation.evidence),
        )

    console.print(table)


@cli.command()
@click.argument('user_id')
@click.argument('app_id')
@click.argument('access_type')
@click.pass_context
def check_grant(ctx, user_id, app_id, access_type):
    """Check whether a prospective grant would break a SoD rule."""
    controller = ctx.obj['controller']
    try:
        rules = controller.service.sod_evaluator.check_grant(controller.tenant_id, user_id, app_id, access_type)
    except GovernanceError as e:
        _fail(str(e))

    if not rules:
        console.print(f"[green]✓ Granting {app_id}:{access_type} to {user_id} breaks no SoD rule[/green]")
        return

    console.print(f"[red]✗ Granting {app_id}:{access_type} to {user_id} would break:[/red]")
    for rule in rules:
        console.print(f"  - [{rule.severity.value}] {rule.name}")


@cli.command()
@click.option('--framework', help='Restrict to a compliance framework (e.g. SOX)')
@click.pass_context
def compliance_report(ctx, framework):
    """Show the SoD compliance report and open findings."""
    controller = ctx.obj['controller']
    service = controller.service
    report = service.sod_evaluator.get_compliance_report(controller.tenant_id, framework)
    summary = service.store.get_summary(controller.tenant_id)

    console.print("[bold blue]Compliance Report[/bold blue]")
    console.print(f"Framework: {framework or 'all'}")
    console.print(f"Active SoD rules: {report['active_rules']}")
    console.print(f"SoD compliance score: {report['compliance_score']}%")

    console.print("\n[bold]Violations by status[/bold]")
    for status, count in report["violations_by_status"].items():
        console.print(f"  {status}: {count}")

    console.print("\n[bold]Open findings[/bold]")
    console.print(f"  Drift alerts: {summary['open_drift_alerts']}")
    console.print(f"  Overprivileged accounts: {summary['open_overprivileged_accounts']}")
    open_campaigns = len(service.store.list_campaigns(controller.tenant_id, CampaignStatus.ACTIVE))
    console.print(f"  Active campaigns: {open_campaigns}")


@cli.command()
@click.option('--port', default=8000, help='Port to run the API server on')
@click.option('--host', default='127.0.0.1', help='Host to bind the API server to')
def serve(port, host):
    """Start the Governance Engine API server."""
    from ..api.server import start_server

    console.print(f"[green]Starting Governance Engine API server on {host}:{port}[/green]")
    console.print("[blue]Press Ctrl+C to stop[/blue]")

    try:
        start_server(host=host, port=port, reload=False)
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped[/yellow]")


def display_batch_report(report: BatchReport):
    """Display one job's batch report."""
    if report.skipped:
        console.print(f"[yellow]{report.job}: skipped[/yellow]")
        return

    failed = report.failed_tenants
    if failed:
        console.print(f"[red]✗ {report.job} ({report.period}) failed for {len(failed)} tenants[/red]")
    else:
        console.print(f"[green]✓ {report.job} ({report.period}) completed[/green]")

    table = Table(title=f"{report.job} - {report.period}")
    table.add_column("Tenant", style="cyan")
    table.add_column("Result")
    table.add_column("Details")

    for result in report.results:
        if not result.success:
            outcome = "[red]failed[/red]"
            details = f"{result.error_type}: {result.error}"
        elif result.skipped:
            outcome = "[yellow]skipped[/yellow]"
            details = str(result.summary.get("reason", ""))
        else:
            outcome = "[green]ok[/green]"
            details = ", ".join(f"{k}={v}" for k, v in result.summary.items() if k != "warnings")
        table.add_row(result.tenant_id, outcome, details)

    console.print(table)


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
