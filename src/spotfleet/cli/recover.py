"""Manual recovery commands.

    spotfleet recover 3            # new instance for slot 3
    spotfleet recover 1 4 7        # several slots, one after another
    spotfleet recover all
    spotfleet recover restart 2 [IP]
    spotfleet recover status
"""

import ipaddress
import logging
from dataclasses import dataclass, field

from spotfleet.app.logging import clear_trace_context, set_trace_id
from spotfleet.cli.factory import FleetContext
from spotfleet.control.recovery import job_statuses
from spotfleet.core.errors import AlreadyRecovering, ConfigError, FleetError
from spotfleet.core.logging_schema import LogEvent
from spotfleet.core.models import RecoveryResult

logger = logging.getLogger(__name__)


@dataclass
class RecoverRequest:
    action: str  # recover | restart | status
    targets: list[str] = field(default_factory=list)
    ip: str | None = None


def _is_ip(token: str) -> bool:
    try:
        ipaddress.ip_address(token)
    except ValueError:
        return False
    return True


def parse_recover_request(tokens: list[str]) -> RecoverRequest:
    """Split raw ``recover`` arguments into an action, targets and optional IP."""
    if not tokens:
        raise ConfigError("Usage: spotfleet recover <num...|all|status|restart num [ip]>")

    head, rest = tokens[0], list(tokens[1:])
    if head == "status":
        if rest:
            raise ConfigError("recover status takes no arguments")
        return RecoverRequest(action="status")

    if head == "restart":
        ip = None
        if rest and _is_ip(rest[-1]):
            ip = rest.pop()
        if not rest:
            raise ConfigError("Usage: spotfleet recover restart <num> [ip]")
        if ip and len(rest) != 1:
            raise ConfigError("An explicit IP can only be given for a single slot")
        return RecoverRequest(action="restart", targets=rest, ip=ip)

    return RecoverRequest(action="recover", targets=list(tokens))


def resolve_slots(tokens: list[str], known: list[int], max_slot_num: int) -> list[int]:
    """Slot numbers named by ``tokens``, validated against the collection."""
    if "all" in tokens:
        if len(tokens) != 1:
            raise ConfigError("'all' cannot be combined with slot numbers")
        return sorted(known)

    nums: set[int] = set()
    for token in tokens:
        try:
            num = int(token)
        except ValueError:
            raise ConfigError(f"Invalid slot number: {token!r}") from None
        if not 1 <= num <= max_slot_num:
            raise ConfigError(f"Slot {num} outside 1..{max_slot_num}")
        if num not in known:
            raise ConfigError(f"Job {num} not found in instances file")
        nums.add(num)
    return sorted(nums)


def _print_result(ctx: FleetContext, result: RecoveryResult) -> None:
    if result.already_running:
        print(f"[{result.num}] SUCCESS - already running on {result.ip} (PID {result.pid})")
        return
    log = ctx.bringup.log_path(result.num)
    print(f"[{result.num}] SUCCESS - job running on {result.ip} (PID {result.pid})")
    print(f"  Monitor: ssh {ctx.settings.ssh.user}@{result.ip} 'tail -f {log}'")


async def status(ctx: FleetContext) -> int:
    ctx.store.load()
    statuses = await job_statuses(ctx.store, ctx.bringup, ctx.settings.monitor.probe_timeout)
    print("Job status:")
    for item in statuses:
        print(f"  {item.num} ({item.description}): {item.status_text()}")
    return 0


async def run(ctx: FleetContext, request: RecoverRequest, profile_name: str | None = None) -> int:
    """Run a recover/restart request. Exit code 1 when any slot failed."""
    if request.action == "status":
        return await status(ctx)

    ctx.store.load()
    nums = resolve_slots(request.targets, ctx.store.nums(), ctx.store.max_slot_num)
    restart = request.action == "restart"
    coordinator = ctx.recovery(profile_name, provisioning=not restart)

    succeeded: list[int] = []
    skipped: list[int] = []
    failed: list[int] = []
    for num in nums:
        set_trace_id()
        print(f"{'Restarting' if restart else 'Recovering'} job {num}...")
        try:
            if restart:
                result = await coordinator.restart(num, request.ip)
            else:
                result = await coordinator.recover(num)
        except AlreadyRecovering as exc:
            print(f"[{num}] SKIPPED - {exc.message}")
            skipped.append(num)
        except FleetError as exc:
            print(f"[{num}] FAILED - {exc.message}")
            failed.append(num)
        except Exception as exc:
            logger.exception(
                "Unexpected error handling slot",
                extra={"event": LogEvent.RECOVERY_FAILED, "slot": num},
            )
            print(f"[{num}] FAILED - {exc}")
            failed.append(num)
        else:
            _print_result(ctx, result)
            succeeded.append(num)
        finally:
            clear_trace_context()

    if len(nums) > 1:
        print()
        print(
            f"Done: {len(succeeded)} succeeded, {len(skipped)} skipped, {len(failed)} failed"
        )
        if failed:
            print(f"Failed: {' '.join(str(n) for n in failed)}")
    return 1 if failed else 0
