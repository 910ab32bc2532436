"""Monitor command: single pass or watch loop."""

import asyncio
import signal
from datetime import datetime

from spotfleet.app.metrics import start_exporter
from spotfleet.cli.factory import FleetContext
from spotfleet.core.models import CycleReport, InstanceSlot


def _print_cycle(report: CycleReport, summary: list[tuple[InstanceSlot, str]]) -> None:
    print(f"=== {datetime.now():%Y-%m-%d %H:%M:%S} ({report.trace_id}) ===")
    for item in report.slots:
        line = f"  Instance {item.num} ({item.ip or '-'}): {item.status_text()}"
        if item.recovery is not None:
            line += f" [recovery: {item.recovery.value}]"
        print(line)
    print()
    print("Quick summary:")
    for slot, status in summary:
        print(f"  {slot.num}: {status}")
    print()


async def run(
    ctx: FleetContext,
    watch: bool = False,
    auto_recover: bool = False,
    interval: float | None = None,
) -> int:
    settings = ctx.settings
    monitor = ctx.monitor(auto_recover=auto_recover)
    interval = interval if interval is not None else settings.monitor.watch_interval

    print(f"{settings.aws.project_tag} monitor")
    if auto_recover:
        print(f"Auto-recovery: ENABLED (timeout {settings.monitor.recovery_timeout:.0f}s)")

    if not watch:
        report = await monitor.run_cycle()
        _print_cycle(report, await monitor.quick_summary())
        if report.completed:
            print("COMPLETE: success marker or result objects found")
        return 0

    if settings.metrics.enabled:
        start_exporter(settings.metrics.port)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, monitor.request_stop)

    print(f"Watching every {interval:.0f}s (Ctrl+C stops after the current cycle)")
    print()
    try:
        await monitor.run(interval, on_cycle=_print_cycle)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    return 0
