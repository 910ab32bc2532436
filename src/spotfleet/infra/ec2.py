"""EC2 spot capacity provider (aioboto3).

Only the raw control-plane calls live here. Zone fallback, fulfillment
polling and cancellation policy belong to CapacityProvisioner.
"""

import base64
import logging
from types import TracebackType

import aioboto3
from types_aiobotocore_ec2 import EC2Client

from spotfleet.app.config import AwsConfig
from spotfleet.core.interfaces.cloud import CapacityProvider, InstanceInfo, SpotRequestInfo
from spotfleet.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

BASE_USER_DATA = """#!/bin/bash
set -e
sleep 15
apt-get update
apt-get install -y build-essential jq
touch /home/ubuntu/.setup-complete
"""


def cloud_init_script(extra: str = "") -> str:
    """Base bootstrap script, with the configured extra user data appended."""
    if extra:
        return f"{BASE_USER_DATA}{extra}\n"
    return BASE_USER_DATA


class Ec2ClientContext:
    """Context manager for an EC2 client bound to the fleet region."""

    def __init__(self, session: aioboto3.Session, config: AwsConfig) -> None:
        self._session = session
        self._config = config
        self._context: object | None = None

    async def __aenter__(self) -> EC2Client:
        self._context = self._session.client(
            "ec2",
            region_name=self._config.region,
            endpoint_url=self._config.endpoint_url,
        )
        return await self._context.__aenter__()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._context:
            await self._context.__aexit__(exc_type, exc_val, exc_tb)


def _to_instance_info(raw: dict) -> InstanceInfo:
    tags = {t["Key"]: t["Value"] for t in raw.get("Tags", [])}
    launch_time = raw.get("LaunchTime")
    return InstanceInfo(
        instance_id=raw["InstanceId"],
        state=raw.get("State", {}).get("Name", "unknown"),
        ip=raw.get("PublicIpAddress"),
        zone=raw.get("Placement", {}).get("AvailabilityZone", ""),
        launch_time=launch_time.isoformat() if hasattr(launch_time, "isoformat") else str(launch_time or ""),
        tags=tags,
    )


class Ec2CapacityProvider(CapacityProvider):
    """CapacityProvider backed by EC2 one-time spot requests."""

    def __init__(self, config: AwsConfig, session: aioboto3.Session | None = None) -> None:
        self._config = config
        self._session = session or aioboto3.Session()

    def _client(self) -> Ec2ClientContext:
        return Ec2ClientContext(self._session, self._config)

    async def request_capacity(
        self,
        zone: str,
        instance_type: str,
        price_ceiling: str,
        user_data: str,
    ) -> str:
        launch_spec = {
            "ImageId": self._config.ami_id,
            "InstanceType": instance_type,
            "KeyName": self._config.key_name,
            "SecurityGroupIds": [self._config.security_group],
            "Placement": {"AvailabilityZone": zone},
            # RequestSpotInstances does not encode UserData itself
            "UserData": base64.b64encode(user_data.encode()).decode(),
        }
        async with self._client() as ec2:
            response = await ec2.request_spot_instances(
                InstanceCount=1,
                Type="one-time",
                SpotPrice=price_ceiling,
                LaunchSpecification=launch_spec,
            )
        return response["SpotInstanceRequests"][0]["SpotInstanceRequestId"]

    async def describe_request(self, request_id: str) -> SpotRequestInfo:
        async with self._client() as ec2:
            response = await ec2.describe_spot_instance_requests(
                SpotInstanceRequestIds=[request_id]
            )
        raw = response["SpotInstanceRequests"][0]
        return SpotRequestInfo(
            request_id=request_id,
            state=raw.get("State", "unknown"),
            status_code=raw.get("Status", {}).get("Code", ""),
            instance_id=raw.get("InstanceId"),
        )

    async def cancel_request(self, request_id: str) -> None:
        async with self._client() as ec2:
            await ec2.cancel_spot_instance_requests(SpotInstanceRequestIds=[request_id])

    async def tag_instance(self, instance_id: str, tags: dict[str, str]) -> None:
        async with self._client() as ec2:
            await ec2.create_tags(
                Resources=[instance_id],
                Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
            )

    async def wait_running(self, instance_id: str) -> None:
        async with self._client() as ec2:
            waiter = ec2.get_waiter("instance_running")
            await waiter.wait(InstanceIds=[instance_id])

    async def describe_instance(self, instance_id: str) -> InstanceInfo | None:
        async with self._client() as ec2:
            response = await ec2.describe_instances(InstanceIds=[instance_id])
        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                return _to_instance_info(raw)
        return None

    async def list_instances(
        self, project_tag: str, states: tuple[str, ...] | None = None
    ) -> list[InstanceInfo]:
        filters = [{"Name": "tag:Project", "Values": [project_tag]}]
        if states:
            filters.append({"Name": "instance-state-name", "Values": list(states)})

        instances: list[InstanceInfo] = []
        async with self._client() as ec2:
            paginator = ec2.get_paginator("describe_instances")
            async for page in paginator.paginate(Filters=filters):
                for reservation in page.get("Reservations", []):
                    instances.extend(_to_instance_info(raw) for raw in reservation.get("Instances", []))
        instances.sort(key=lambda i: i.launch_time)
        return instances

    async def terminate(self, instance_id: str) -> None:
        async with self._client() as ec2:
            await ec2.terminate_instances(InstanceIds=[instance_id])
        logger.info(
            "Instance terminated",
            extra={"event": LogEvent.INSTANCE_TERMINATED, "instance_id": instance_id},
        )
