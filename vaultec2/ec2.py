"""
EC2 compute provider built on boto3.
"""

import logging
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, WaiterError

from .config import ComputeProviderConfig
from .errors import ProviderError
from .models import InstanceSpec, ObservedInstance
from .tags import from_tag_list, to_tag_list

logger = logging.getLogger(__name__)

GONE_STATES = {"shutting-down", "terminated"}
NOT_FOUND_CODES = {"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"}

ERROR_HINTS = {
    "InvalidAMIID.NotFound": "check that ami_id exists in the configured aws_region",
    "InvalidAMIID.Malformed": "check the ami_id format (ami-xxxxxxxx)",
    "UnauthorizedOperation": "the AWS credentials lack the required EC2 permissions",
    "InstanceLimitExceeded": "the account instance quota is exhausted",
    "VcpuLimitExceeded": "the account vCPU quota is exhausted",
    "InsufficientInstanceCapacity": "AWS has no capacity for this instance_type right now",
}


def _provider_error(action: str, e: Exception) -> ProviderError:
    if isinstance(e, ClientError):
        code = e.response.get("Error", {}).get("Code", "Unknown")
        message = e.response.get("Error", {}).get("Message", str(e))
        return ProviderError(f"EC2 {action} failed: {code}: {message}", code=code, context=ERROR_HINTS.get(code))
    if isinstance(e, NoCredentialsError):
        return ProviderError(f"EC2 {action} failed: no AWS credentials found", code="NoCredentials")
    if isinstance(e, WaiterError):
        return ProviderError(f"EC2 {action} failed while waiting: {e}", code="WaiterError")
    return ProviderError(f"EC2 {action} failed: {e}")


class ComputeProvider:
    """Thin wrapper over the EC2 API for a single managed instance."""

    def __init__(self, config: ComputeProviderConfig, client=None):
        self.config = config
        self.client = client or boto3.client("ec2", region_name=config.region)

    def _wait(self, waiter_name: str, instance_id: str) -> None:
        waiter = self.client.get_waiter(waiter_name)
        waiter.wait(InstanceIds=[instance_id])

    def create_instance(self, spec: InstanceSpec) -> str:
        """
        Launch one instance and wait until it is running.

        Args:
            spec: Desired instance

        Returns:
            Instance ID assigned by EC2
        """
        try:
            response = self.client.run_instances(
                ImageId=spec.ami,
                InstanceType=spec.instance_type,
                MinCount=1,
                MaxCount=1,
                TagSpecifications=[
                    {"ResourceType": "instance", "Tags": to_tag_list(spec.tags)},
                ],
            )
            instance_id = response["Instances"][0]["InstanceId"]
        except (ClientError, BotoCoreError) as e:
            raise _provider_error("RunInstances", e) from e

        logger.info("Launched instance %s (%s, %s)", instance_id, spec.ami, spec.instance_type)

        try:
            self._wait("instance_running", instance_id)
        except (ClientError, BotoCoreError) as e:
            error = _provider_error("RunInstances", e)
            error.instance_id = instance_id
            raise error from e

        return instance_id

    def describe_instance(self, instance_id: str) -> Optional[ObservedInstance]:
        """
        Read an instance's current attributes.

        Returns:
            ObservedInstance, or None if the instance no longer exists
        """
        try:
            response = self.client.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return None
            raise _provider_error("DescribeInstances", e) from e
        except BotoCoreError as e:
            raise _provider_error("DescribeInstances", e) from e

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                if instance.get("InstanceId") != instance_id:
                    continue
                state = instance.get("State", {}).get("Name", "unknown")
                if state in GONE_STATES:
                    return None
                return ObservedInstance(
                    instance_id=instance_id,
                    ami=instance.get("ImageId", ""),
                    instance_type=instance.get("InstanceType", ""),
                    tags=from_tag_list(instance.get("Tags", [])),
                    state=state,
                )
        return None

    def update_instance_type(self, instance_id: str, instance_type: str) -> None:
        """
        Change the size class of an existing instance.

        The instance is stopped, modified and started again; its ID is kept.
        """
        try:
            self.client.stop_instances(InstanceIds=[instance_id])
            self._wait("instance_stopped", instance_id)
            self.client.modify_instance_attribute(
                InstanceId=instance_id,
                InstanceType={"Value": instance_type},
            )
            self.client.start_instances(InstanceIds=[instance_id])
            self._wait("instance_running", instance_id)
        except (ClientError, BotoCoreError) as e:
            raise _provider_error("ModifyInstanceAttribute", e) from e

        logger.info("Changed instance %s to %s", instance_id, instance_type)

    def update_tags(self, instance_id: str, to_set: Dict[str, str], to_remove: List[str]) -> None:
        try:
            if to_set:
                self.client.create_tags(Resources=[instance_id], Tags=to_tag_list(to_set))
            if to_remove:
                self.client.delete_tags(Resources=[instance_id], Tags=[{"Key": k} for k in to_remove])
        except (ClientError, BotoCoreError) as e:
            raise _provider_error("CreateTags", e) from e

        logger.info("Updated tags on %s (%d set, %d removed)", instance_id, len(to_set), len(to_remove))

    def terminate_instance(self, instance_id: str) -> None:
        """Terminate an instance and wait until it is gone."""
        try:
            self.client.terminate_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                logger.info("Instance %s already gone", instance_id)
                return
            raise _provider_error("TerminateInstances", e) from e
        except BotoCoreError as e:
            raise _provider_error("TerminateInstances", e) from e

        try:
            self._wait("instance_terminated", instance_id)
        except (ClientError, BotoCoreError) as e:
            raise _provider_error("TerminateInstances", e) from e

        logger.info("Terminated instance %s", instance_id)
