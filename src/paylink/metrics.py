"""Link ledger observability metrics.

Metric categories:
- Link metrics: links per state, claim attempts
- Transfer metrics: funding and claim transfers recorded
- Health indicators: links stuck in `claiming`

Usage:
    collector = MetricsCollector(session)
    metrics = collector.collect_all()

    # For Prometheus export
    print(metrics.to_prometheus())

    # For JSON export
    print(metrics.to_json())
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from paylink.models import LinkTransfer, PaymentLink
from paylink.services.state_machine import LinkState

link_table = PaymentLink.__table__
transfer_table = LinkTransfer.__table__


@dataclass
class Counter:
    """A counter metric (monotonically increasing)."""

    name: str
    value: int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class Gauge:
    """A gauge metric (can go up or down)."""

    name: str
    value: float | int | Decimal
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class LinkMetrics:
    """Collection of all link ledger metrics."""

    links_total: Counter
    links_by_state: list[Gauge]
    claim_attempts_total: Counter
    transfers_by_kind: list[Counter]
    stuck_claims: Gauge

    collected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def metrics(self) -> list[Counter | Gauge]:
        """All metrics, flattened."""
        return [
            self.links_total,
            *self.links_by_state,
            self.claim_attempts_total,
            *self.transfers_by_kind,
            self.stuck_claims,
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "collected_at": self.collected_at.isoformat(),
            "links_total": self._metric_to_dict(self.links_total),
            "links_by_state": [self._metric_to_dict(m) for m in self.links_by_state],
            "claim_attempts_total": self._metric_to_dict(self.claim_attempts_total),
            "transfers_by_kind": [self._metric_to_dict(m) for m in self.transfers_by_kind],
            "stuck_claims": self._metric_to_dict(self.stuck_claims),
        }

    @staticmethod
    def _metric_to_dict(metric: Counter | Gauge) -> dict[str, Any]:
        """Convert single metric to dict."""
        return {
            "name": metric.name,
            "value": float(metric.value) if isinstance(metric.value, Decimal) else metric.value,
            "labels": metric.labels,
            "help": metric.help_text,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    def to_prometheus(self) -> str:
        """Convert to Prometheus text format."""
        lines: list[str] = []
        described: set[str] = set()

        for metric in self.metrics():
            if metric.name not in described:
                if metric.help_text:
                    lines.append(f"# HELP {metric.name} {metric.help_text}")
                metric_type = "counter" if isinstance(metric, Counter) else "gauge"
                lines.append(f"# TYPE {metric.name} {metric_type}")
                described.add(metric.name)

            labels = ""
            if metric.labels:
                label_parts = [f'{k}="{v}"' for k, v in metric.labels.items()]
                labels = "{" + ",".join(label_parts) + "}"
            value = float(metric.value) if isinstance(metric.value, Decimal) else metric.value
            lines.append(f"{metric.name}{labels} {value}")

        return "\n".join(lines)


class MetricsCollector:
    """Collects metrics from database."""

    def __init__(self, session: Session, stuck_claim_minutes: int = 15) -> None:
        self._session = session
        self._stuck_after = timedelta(minutes=stuck_claim_minutes)

    def collect_all(self) -> LinkMetrics:
        """Collect all metrics."""
        by_state = self._count_by_state()
        return LinkMetrics(
            links_total=Counter(
                name="paylink_links_total",
                value=sum(by_state.values()),
                help_text="Payment links created",
            ),
            links_by_state=[
                Gauge(
                    name="paylink_links",
                    value=by_state.get(state.value, 0),
                    labels={"state": state.value},
                    help_text="Payment links by current state",
                )
                for state in LinkState
            ],
            claim_attempts_total=self._count_claim_attempts(),
            transfers_by_kind=self._count_transfers_by_kind(),
            stuck_claims=self._gauge_stuck_claims(),
        )

    def _count_by_state(self) -> dict[str, int]:
        """Count links grouped by state."""
        rows = self._session.execute(
            select(link_table.c.state, func.count()).group_by(link_table.c.state)
        )
        return {state: count for state, count in rows}

    def _count_claim_attempts(self) -> Counter:
        """Total entries into `claiming` across all links."""
        total = self._session.execute(
            select(func.coalesce(func.sum(link_table.c.claim_attempts), 0))
        ).scalar_one()
        return Counter(
            name="paylink_claim_attempts_total",
            value=int(total),
            help_text="Claim gate acquisitions",
        )

    def _count_transfers_by_kind(self) -> list[Counter]:
        """Count recorded transfers by kind."""
        rows = dict(
            self._session.execute(
                select(transfer_table.c.kind, func.count()).group_by(transfer_table.c.kind)
            ).all()
        )
        return [
            Counter(
                name="paylink_transfers_total",
                value=rows.get(kind, 0),
                labels={"kind": kind},
                help_text="Transfers recorded against links",
            )
            for kind in ("funding", "claim")
        ]

    def _gauge_stuck_claims(self) -> Gauge:
        """Links left in `claiming` longer than the threshold."""
        cutoff = datetime.now(timezone.utc) - self._stuck_after
        count = self._session.execute(
            select(func.count())
            .select_from(link_table)
            .where(
                link_table.c.state == LinkState.CLAIMING.value,
                link_table.c.updated_at < cutoff,
            )
        ).scalar_one()
        return Gauge(
            name="paylink_stuck_claims",
            value=count,
            labels={"threshold_minutes": str(int(self._stuck_after.total_seconds() // 60))},
            help_text="Links in claiming longer than the threshold; need resolve",
        )
