"""Metric definitions used across the application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

GATE_DECISIONS = "access_gate_decisions_total"
GATE_LATENCY = "access_gate_evaluation_seconds"
TICKET_TRANSITIONS = "ticket_transitions_total"
TICKET_CLAIM_CONFLICTS = "ticket_claim_conflicts_total"
NOTIFICATIONS_EMITTED = "notifications_emitted_total"
SUSPENSIONS_APPLIED = "suspensions_applied_total"


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name=GATE_DECISIONS,
        metric_type="counter",
        description="Access gate evaluations by outcome.",
        label_names=("outcome",),
    ),
    MetricDefinition(
        name=GATE_LATENCY,
        metric_type="distribution",
        description="Time spent loading and evaluating suspension state.",
    ),
    MetricDefinition(
        name=TICKET_TRANSITIONS,
        metric_type="counter",
        description="Support ticket lifecycle operations by action and outcome.",
        label_names=("action", "outcome"),
    ),
    MetricDefinition(
        name=TICKET_CLAIM_CONFLICTS,
        metric_type="counter",
        description="Claims lost to a concurrent moderator.",
    ),
    MetricDefinition(
        name=NOTIFICATIONS_EMITTED,
        metric_type="counter",
        description="Notifications written by fan-out, by type.",
        label_names=("type",),
    ),
    MetricDefinition(
        name=SUSPENSIONS_APPLIED,
        metric_type="counter",
        description="Suspension ledger mutations by kind.",
        label_names=("kind",),
    ),
)
