"""Prometheus metrics for the detection & response pipeline."""
from prometheus_client import Counter, Histogram


# ============================================================================
# Ingestion & Scoring
# ============================================================================

events_ingested_total = Counter(
    'security_events_ingested_total',
    'Total security events ingested',
    ['event_type', 'is_threat']
)

risk_score_distribution = Histogram(
    'security_event_risk_score',
    'Risk score assigned to ingested events',
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0)
)

scoring_fallbacks_total = Counter(
    'security_scoring_fallbacks_total',
    'Heuristics skipped because a store was unavailable',
    ['heuristic']
)


# ============================================================================
# Correlation & Incidents
# ============================================================================

correlation_ids_created_total = Counter(
    'security_correlation_ids_created_total',
    'Correlation identifiers generated'
)

correlation_write_failures_total = Counter(
    'security_correlation_write_failures_total',
    'Failed correlation id writes'
)

incidents_created_total = Counter(
    'security_incidents_created_total',
    'Security incidents opened',
    ['severity']
)


# ============================================================================
# Outbound dispatch
# ============================================================================

response_actions_total = Counter(
    'security_response_actions_total',
    'Automated response actions dispatched',
    ['action_type', 'outcome']
)

alert_dispatches_total = Counter(
    'security_alert_dispatches_total',
    'Alert channel dispatch attempts',
    ['channel', 'outcome']
)
