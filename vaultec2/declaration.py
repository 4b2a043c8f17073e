"""
Instance declaration and output binding.

The instance tags embed a value read from Vault. Tags are plain text and
visible to anyone allowed to describe the instance; this demonstrates the
provider integration and must not be used to distribute real secrets.
"""

from typing import Dict, Optional

from .models import InstanceSpec, RunOutputs, SecretDocument
from .tags import base_tags, validate_tags
from .variables import InputVariables

INSTANCE_NAME = "DemoEC2Instance"
SECRET_KEY = "username"


def declare_instance(
    variables: InputVariables,
    secret: SecretDocument,
    workspace: str = "default",
    extra_tags: Optional[Dict[str, str]] = None,
) -> InstanceSpec:
    """
    Describe the desired instance.

    Args:
        variables: Resolved input variables
        secret: Document read from Vault
        workspace: Workspace name, recorded as a tag
        extra_tags: User tags; they cannot override Name or Secret

    Returns:
        InstanceSpec

    Raises:
        MissingSecretKeyError: If the document has no "username" key
    """
    secret_value = secret.get(SECRET_KEY)

    tags = base_tags(workspace, extra_tags)
    tags["Name"] = INSTANCE_NAME
    tags["Secret"] = secret_value
    validate_tags(tags)

    return InstanceSpec(ami=variables.ami_id, instance_type=variables.instance_type, tags=tags)


def bind_outputs(instance_id: str, secret_value: str) -> RunOutputs:
    return RunOutputs(ec2_instance_id=instance_id, vault_secret=secret_value)
