"""
Audit Logging Module.

This module records reviewer decisions, alert resolutions and revocation
attempts as append-only daily JSONL files.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..models import AuditRecord, utcnow

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only logger for governance actions.

    One file per UTC day, one JSON record per line.
    """

    def __init__(self, audit_dir: Union[str, Path] = "audit"):
        """
        Initialize the audit logger.

        Args:
            audit_dir: Directory to store audit logs
        """
        self.audit_dir = Path(audit_dir)
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log_event(self, record: AuditRecord) -> str:
        """
        Log an audit event.

        Args:
            record: The audit record to log

        Returns:
            The record ID
        """
        log_file = self.audit_dir / f"audit_{record.timestamp.strftime('%Y-%m-%d')}.jsonl"
        data = record.model_dump(mode="json")

        with self._lock:
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(data) + "\n")

        logger.debug(f"Logged audit event {record.id} ({record.event_type}) for {record.subject}")
        return record.id

    def record(
        self,
        tenant_id: str,
        event_type: str,
        actor: str,
        subject: str,
        action: str,
        success: bool = True,
        error_message: Optional[str] = None,
        **metadata: Any,
    ) -> str:
        """Build and log an AuditRecord in one call."""
        return self.log_event(
            AuditRecord(
                tenant_id=tenant_id,
                event_type=event_type,
                actor=actor,
                subject=subject,
                action=action,
                success=success,
                error_message=error_message,
                metadata=metadata,
            )
        )

    def get_events(
        self,
        tenant_id: Optional[str] = None,
        event_type: Optional[str] = None,
        subject: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """
        Retrieve audit events, most recent first.

        Args:
            tenant_id: Filter by tenant
            event_type: Filter by event type
            subject: Filter by subject record id
            start_date: Filter by start date
            end_date: Filter by end date
            limit: Maximum number of records to return

        Returns:
            List of matching AuditRecords
        """
        results: List[AuditRecord] = []

        for log_file in sorted(self.audit_dir.glob("audit_*.jsonl"), reverse=True):
            if len(results) >= limit:
                break

            try:
                with open(log_file, encoding="utf-8") as f:
                    lines = f.readlines()
            except OSError as e:
                logger.error(f"Failed to read log file {log_file}: {e}")
                continue

            for line in reversed(lines):
                if len(results) >= limit:
                    break

                try:
                    record = AuditRecord.model_validate(json.loads(line))
                except ValueError as e:
                    logger.warning(f"Failed to parse audit record: {e}")
                    continue

                if tenant_id and record.tenant_id != tenant_id:
                    continue
                if event_type and record.event_type != event_type:
                    continue
                if subject and record.subject != subject:
                    continue
                if start_date and record.timestamp < start_date:
                    continue
                if end_date and record.timestamp > end_date:
                    continue

                results.append(record)

        return results

    def get_statistics(self, tenant_id: str, days_back: int = 30) -> Dict[str, Any]:
        """Count audit events by type over a recent window."""
        since = utcnow().timestamp() - days_back * 86400
        events = [
            e for e in self.get_events(tenant_id=tenant_id, limit=10000)
            if e.timestamp.timestamp() >= since
        ]

        by_type: Dict[str, int] = {}
        for event in events:
            by_type[event.event_type] = by_type.get(event.event_type, 0) + 1

        return {
            "total_events": len(events),
            "failed_events": len([e for e in events if not e.success]),
            "events_by_type": by_type,
        }
