"""CapacityProvisioner - one spot instance, zones tried in priority order.

Per zone:
1. Submit one one-time capacity request at the price ceiling
2. Poll for fulfillment (bounded, default 60s)
3. On timeout / terminal failure: cancel (best-effort), next zone

The first fulfilled zone ends the loop. Nothing is retried across the
whole zone list; a new ``provision`` call starts from the top again.
"""

import logging
import time

from spotfleet.app.metrics.collector import PROVISION_ATTEMPTS_TOTAL, PROVISION_DURATION
from spotfleet.core.errors import NoCapacityError, ProvisioningError
from spotfleet.core.interfaces.cloud import CapacityProvider, SpotRequestInfo
from spotfleet.core.logging_schema import LogEvent
from spotfleet.core.models import AttemptOutcome, Fulfilled, ProvisioningAttempt
from spotfleet.core.retryable import classify_error, retry_until

logger = logging.getLogger(__name__)


class CapacityProvisioner:
    """Acquires one instance with ordered zone fallback."""

    def __init__(
        self,
        provider: CapacityProvider,
        *,
        user_data: str = "",
        fulfillment_timeout: float = 60.0,
        poll_interval: float = 5.0,
        address_timeout: float = 120.0,
    ) -> None:
        self._provider = provider
        self._user_data = user_data
        self._fulfillment_timeout = fulfillment_timeout
        self._poll_interval = poll_interval
        self._address_timeout = address_timeout

    async def provision(
        self,
        zones: list[str],
        instance_type: str,
        price_ceiling: str,
        pinned_zone: str | None = None,
        tags: dict[str, str] | None = None,
    ) -> Fulfilled:
        """Return a running, addressed instance or raise NoCapacityError."""
        candidates = [pinned_zone] if pinned_zone else list(zones)
        if not candidates:
            raise ProvisioningError("No availability zones to try")

        started = time.monotonic()
        attempts: list[ProvisioningAttempt] = []

        for zone in candidates:
            attempt, instance_id = await self._try_zone(zone, instance_type, price_ceiling)
            attempts.append(attempt)
            PROVISION_ATTEMPTS_TOTAL.labels(zone=zone, outcome=attempt.outcome.value).inc()
            if instance_id is None:
                continue

            fulfilled = await self._finish(instance_id, zone, tags or {})
            fulfilled.attempts = attempts
            PROVISION_DURATION.labels(result="fulfilled").observe(time.monotonic() - started)
            return fulfilled

        PROVISION_DURATION.labels(result="no_capacity").observe(time.monotonic() - started)
        logger.error(
            "No spot capacity in any zone",
            extra={"event": LogEvent.PROVISION_EXHAUSTED, "zones": candidates},
        )
        raise NoCapacityError(candidates)

    async def _try_zone(
        self, zone: str, instance_type: str, price_ceiling: str
    ) -> tuple[ProvisioningAttempt, str | None]:
        attempt = ProvisioningAttempt(
            zone=zone,
            instance_type=instance_type,
            price_ceiling=price_ceiling,
            outcome=AttemptOutcome.NO_CAPACITY,
        )

        try:
            request_id = await self._provider.request_capacity(
                zone, instance_type, price_ceiling, self._user_data
            )
        except Exception as exc:
            attempt.outcome = AttemptOutcome.API_ERROR
            attempt.status = str(exc)
            logger.warning(
                "Capacity request rejected",
                extra={
                    "event": LogEvent.PROVISION_REJECTED,
                    "zone": zone,
                    "error_class": classify_error(exc),
                    "error": str(exc),
                },
            )
            return attempt, None

        attempt.request_id = request_id
        logger.info(
            "Capacity requested, waiting for fulfillment",
            extra={"event": LogEvent.PROVISION_REQUESTED, "zone": zone, "request_id": request_id},
        )

        last: SpotRequestInfo | None = None

        async def _poll() -> SpotRequestInfo | None:
            nonlocal last
            last = await self._provider.describe_request(request_id)
            if last.fulfilled or last.terminal_failure:
                return last
            return None

        try:
            outcome = await retry_until(
                _poll, interval=self._poll_interval, deadline=self._fulfillment_timeout
            )
        except Exception as exc:
            attempt.outcome = AttemptOutcome.API_ERROR
            attempt.status = str(exc)
            attempt.cancelled = await self._cancel(request_id, zone)
            return attempt, None

        info = outcome.value
        if info is not None and info.fulfilled:
            attempt.outcome = AttemptOutcome.FULFILLED
            logger.info(
                "Capacity fulfilled",
                extra={
                    "event": LogEvent.PROVISION_FULFILLED,
                    "zone": zone,
                    "request_id": request_id,
                    "instance_id": info.instance_id,
                },
            )
            return attempt, info.instance_id

        attempt.status = last.status_code if last else "unknown"
        logger.info(
            "No capacity in zone",
            extra={
                "event": LogEvent.PROVISION_NO_CAPACITY,
                "zone": zone,
                "request_id": request_id,
                "status": attempt.status,
                "timed_out": outcome.timed_out,
            },
        )
        attempt.cancelled = await self._cancel(request_id, zone)
        return attempt, None

    async def _cancel(self, request_id: str, zone: str) -> bool:
        """Best-effort cancel. Errors are logged and swallowed."""
        try:
            await self._provider.cancel_request(request_id)
        except Exception as exc:
            logger.warning(
                "Failed to cancel capacity request",
                extra={
                    "event": LogEvent.REQUEST_CANCEL_FAILED,
                    "zone": zone,
                    "request_id": request_id,
                    "error": str(exc),
                },
            )
            return False
        return True

    async def _finish(self, instance_id: str, zone: str, tags: dict[str, str]) -> Fulfilled:
        """Tag, wait for running and for an assigned address."""
        try:
            if tags:
                await self._provider.tag_instance(instance_id, tags)
            await self._provider.wait_running(instance_id)
        except Exception as exc:
            raise ProvisioningError(f"Instance {instance_id} did not reach running: {exc}") from exc

        async def _address() -> str | None:
            info = await self._provider.describe_instance(instance_id)
            return info.ip if info else None

        outcome = await retry_until(
            _address, interval=self._poll_interval, deadline=self._address_timeout
        )
        if not outcome.ok or not outcome.value:
            raise ProvisioningError(f"Instance {instance_id} has no public IP")

        return Fulfilled(instance_id=instance_id, ip=outcome.value, zone=zone)
