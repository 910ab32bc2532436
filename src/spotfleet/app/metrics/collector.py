"""Prometheus metrics definitions for the fleet engine."""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets (optimized by latency category)
# =============================================================================

# MEDIUM: cloud API calls, remote commands (50ms ~ 120s)
_BUCKETS_MEDIUM = (
    0.05, 0.1, 0.25, 0.5, 1,
    2.5, 5, 10, 30, 60,
    120,
)  # 11 buckets

# SLOW: provisioning, bring-up, recovery, monitor cycles (1s ~ 30min)
_BUCKETS_SLOW = (
    1, 5, 15, 30, 60,
    120, 300, 600, 900, 1800,
)  # 10 buckets

# =============================================================================
# Provisioning
# =============================================================================

PROVISION_ATTEMPTS_TOTAL = Counter(
    "spotfleet_provision_attempts_total",
    "Capacity requests per zone by outcome",
    ["zone", "outcome"],
)

PROVISION_DURATION = Histogram(
    "spotfleet_provision_duration_seconds",
    "Provisioning call duration (all zones)",
    ["result"],
    buckets=_BUCKETS_SLOW,
)

# =============================================================================
# Bring-up / Recovery
# =============================================================================

BRINGUP_STAGE_FAILURES_TOTAL = Counter(
    "spotfleet_bringup_stage_failures_total",
    "Bring-up failures by stage",
    ["stage"],
)

RECOVERY_TOTAL = Counter(
    "spotfleet_recovery_total",
    "Recovery attempts by mode and outcome",
    ["mode", "outcome"],
)

RECOVERY_DURATION = Histogram(
    "spotfleet_recovery_duration_seconds",
    "Recovery attempt duration",
    ["mode"],
    buckets=_BUCKETS_SLOW,
)

# =============================================================================
# Monitor
# =============================================================================

MONITOR_CYCLE_DURATION = Histogram(
    "spotfleet_monitor_cycle_duration_seconds",
    "Monitor cycle duration",
    buckets=_BUCKETS_SLOW,
)

MONITOR_SLOTS = Gauge(
    "spotfleet_monitor_slots",
    "Slots by health in the last cycle",
    ["health"],
)

REMOTE_PROBE_DURATION = Histogram(
    "spotfleet_remote_probe_duration_seconds",
    "Reachability probe duration",
    ["result"],
    buckets=_BUCKETS_MEDIUM,
)

# =============================================================================
# Notifications
# =============================================================================

NOTIFICATIONS_TOTAL = Counter(
    "spotfleet_notifications_total",
    "Notifications by kind, channel and result",
    ["kind", "channel", "result"],
)
