"""Instance commands: launch, status, terminate, ssh."""

import os

from spotfleet.app.logging import set_trace_id
from spotfleet.cli.factory import FleetContext, require_launch_settings
from spotfleet.core.errors import AdmissionRejected, FleetError
from spotfleet.core.models import Fulfilled

RULE = "=" * 46


async def launch(
    ctx: FleetContext,
    profile_name: str | None = None,
    count: int = 1,
    zone: str | None = None,
    dry_run: bool = False,
) -> int:
    """Launch ``count`` spot instances and run initial setup on each."""
    settings = ctx.settings
    require_launch_settings(settings.aws)
    profile = ctx.profile(profile_name)
    zones = [zone] if zone else settings.aws.zone_order()

    print(f"Launching {count} x {profile.instance_type} ({profile.name} profile)...")
    print(f"Max spot price: ${profile.price_ceiling}/hr")

    if dry_run:
        print()
        print("=== DRY RUN ===")
        print(f"Would launch: {count} x {profile.instance_type}")
        print(f"Profile:      {profile.name}")
        print(f"Max price:    ${profile.price_ceiling}/hr")
        print(f"AZ fallback:  {' '.join(zones)}")
        print()
        return 0

    set_trace_id()
    active = await ctx.provider.count_active(settings.aws.project_tag)
    if active + count > settings.fleet.max_instances:
        raise AdmissionRejected(active, settings.fleet.max_instances)

    launched: list[Fulfilled] = []
    for i in range(1, count + 1):
        print(f"Launching instance {i} of {count}...")
        try:
            fulfilled = await ctx.provisioner.provision(
                settings.aws.zone_order(),
                profile.instance_type,
                profile.price_ceiling,
                pinned_zone=zone,
                tags={
                    "Name": f"{settings.aws.project_tag}-{i}",
                    "Project": settings.aws.project_tag,
                    "Profile": profile.name,
                },
            )
        except FleetError as exc:
            print(f"Error: Failed to launch instance {i}: {exc.message}")
            continue
        launched.append(fulfilled)

    if not launched:
        print("Error: No instances were launched")
        return 1

    ctx.launches.record(launched)

    print()
    print(RULE)
    print(f"  Profile:     {profile.name} ({profile.instance_type})")
    print(f"  Instances:   {len(launched)} of {count} launched")
    print(RULE)
    for idx, item in enumerate(launched, start=1):
        print(f"  [{idx}] {item.instance_id} - {item.ip} ({item.zone})")
    print(RULE)

    for item in launched:
        print(f"Setting up instance at {item.ip}...")
        try:
            await ctx.bringup.initial_setup(item.ip)
        except FleetError as exc:
            print(f"Warning: setup of {item.ip} incomplete: {exc.message}")
            continue
        print("  Instance setup complete")

    print()
    print("Connect with:")
    print(f"  ssh -i {settings.ssh_key_path()} {settings.ssh.user}@{launched[0].ip}")
    print()
    return 0


async def status(ctx: FleetContext) -> int:
    """Last launched instance, then every project-tagged instance."""
    primary = ctx.launches.primary()
    if primary is None:
        print("No instance launched yet. Run: spotfleet launch")
    else:
        info = await ctx.provider.describe_instance(primary.instance_id)
        if info is None:
            print(f"Instance {primary.instance_id} not found (may have been terminated)")
        else:
            print(f"Instance: {info.instance_id}")
            print(f"State:    {info.state}")
            print(f"IP:       {info.ip or '-'}")

    project = ctx.settings.aws.project_tag
    instances = await ctx.provider.list_instances(project)
    print()
    print(f"All {project} instances:")
    if not instances:
        print("  None found")
        return 0
    print(f"  {'Instance':<21} {'State':<12} {'IP':<16} {'Name'}")
    for info in instances:
        print(f"  {info.instance_id:<21} {info.state:<12} {info.ip or '-':<16} {info.name}")
    return 0


async def terminate(ctx: FleetContext) -> int:
    primary = ctx.launches.primary()
    if primary is None:
        print("No instance to terminate")
        return 0
    print(f"Terminating instance {primary.instance_id}...")
    await ctx.provider.terminate(primary.instance_id)
    ctx.launches.clear()
    print("Instance terminated")
    return 0


def ssh(ctx: FleetContext) -> int:
    """Replace this process with an interactive ssh session."""
    primary = ctx.launches.primary()
    if primary is None or not primary.ip:
        print("Error: No instance IP saved")
        return 1
    args = ctx.remote.interactive_args(primary.ip)
    os.execvp(args[0], args)
    return 0  # not reached
