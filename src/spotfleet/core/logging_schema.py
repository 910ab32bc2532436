"""Logging field schema - v1.0

Standard fields (added to all logs):
- schema_version: Log schema version
- service: Service name (spotfleet)
- event: Event type (provision_fulfilled, recovery_failed, etc.)
- trace_id: Cycle / recovery attempt ID
- duration_ms: Duration in milliseconds

High cardinality fields (OK in logs, NOT in metric labels):
- slot: Slot number
- ip: Instance address
- instance_id: Cloud instance ID
- request_id: Capacity request ID
"""

from enum import StrEnum


class LogEvent(StrEnum):
    """Standard log event types.

    Use these event types in the 'event' extra field for consistent
    log filtering and analysis.
    """

    # Provisioning events
    PROVISION_REQUESTED = "provision_requested"
    PROVISION_FULFILLED = "provision_fulfilled"
    PROVISION_NO_CAPACITY = "provision_no_capacity"
    PROVISION_REJECTED = "provision_rejected"
    PROVISION_EXHAUSTED = "provision_exhausted"
    REQUEST_CANCEL_FAILED = "request_cancel_failed"
    INSTANCE_TERMINATED = "instance_terminated"

    # Bring-up events
    STAGE_STARTED = "stage_started"
    STAGE_SKIPPED = "stage_skipped"
    STAGE_COMPLETE = "stage_complete"
    STAGE_FAILED = "stage_failed"
    JOB_LAUNCHED = "job_launched"
    JOB_VERIFIED = "job_verified"

    # Recovery events
    ADMISSION_CHECKED = "admission_checked"
    ADMISSION_REJECTED = "admission_rejected"
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_CONTENDED = "lock_contended"
    LOCK_RELEASED = "lock_released"
    LOCK_EVICTED = "lock_evicted"
    RECOVERY_STARTED = "recovery_started"
    RECOVERY_SUCCESS = "recovery_success"
    RECOVERY_FAILED = "recovery_failed"
    RECOVERY_TIMEOUT = "recovery_timeout"
    SLOT_UPDATED = "slot_updated"

    # Monitor events
    CYCLE_STARTED = "cycle_started"
    CYCLE_COMPLETE = "cycle_complete"
    CYCLE_FAILED = "cycle_failed"
    SLOT_UNREACHABLE = "slot_unreachable"
    SLOT_BACK_ONLINE = "slot_back_online"
    SLOT_CHECK_FAILED = "slot_check_failed"
    SUCCESS_FOUND = "success_found"
    RESULTS_FOUND = "results_found"

    # Notification events
    NOTIFY_SENT = "notify_sent"
    NOTIFY_SKIPPED = "notify_skipped"
    NOTIFY_FAILED = "notify_failed"

    # Storage / remote events
    S3_ERROR = "s3_error"
    SSH_ERROR = "ssh_error"

    # Lifecycle events
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"
