"""
Tagging utilities for the managed instance.
"""

from typing import Dict, List, Tuple

from .errors import ConfigurationError

MANAGED_BY = "vaultec2"
RESERVED_PREFIX = "aws:"
MAX_KEY_LENGTH = 128
MAX_VALUE_LENGTH = 256


def base_tags(workspace: str, extra: Dict[str, str] = None) -> Dict[str, str]:
    """
    Generate management tags for a workspace.

    Args:
        workspace: Workspace name
        extra: Additional tags to include

    Returns:
        Dictionary of tags to apply to the instance
    """
    tags = {
        "ManagedBy": MANAGED_BY,
        "Workspace": workspace,
    }

    if extra:
        tags.update(extra)

    return tags


def parse_user_tags(tag_strings: List[str]) -> Dict[str, str]:
    """
    Parse user-provided tag strings in format "key=value".

    Args:
        tag_strings: List of tag strings in "key=value" format

    Returns:
        Dictionary of parsed tags

    Raises:
        ValueError: If tag string format is invalid
    """
    tags = {}

    for tag_str in tag_strings:
        if "=" not in tag_str:
            raise ValueError(f"Invalid tag format: {tag_str}. Expected 'key=value'")

        key, value = tag_str.split("=", 1)
        if not key.strip() or not value.strip():
            raise ValueError(f"Invalid tag format: {tag_str}. Key and value must not be empty")

        tags[key.strip()] = value.strip()

    return tags


def validate_tags(tags: Dict[str, str]) -> None:
    """
    Check declared tags against EC2 tag limits before any API call.

    Raises:
        ConfigurationError: If a key or value breaks the limits
    """
    for key, value in tags.items():
        if key.lower().startswith(RESERVED_PREFIX):
            raise ConfigurationError(f"Tag key '{key}' uses the reserved '{RESERVED_PREFIX}' prefix")
        if len(key) > MAX_KEY_LENGTH:
            raise ConfigurationError(f"Tag key '{key[:32]}...' exceeds {MAX_KEY_LENGTH} characters")
        if len(value) > MAX_VALUE_LENGTH:
            raise ConfigurationError(f"Value of tag '{key}' exceeds {MAX_VALUE_LENGTH} characters")


def to_tag_list(tags: Dict[str, str]) -> List[Dict[str, str]]:
    """Convert a tag dictionary to the EC2 [{"Key", "Value"}] shape."""
    return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]


def from_tag_list(tag_list: List[Dict[str, str]]) -> Dict[str, str]:
    """Convert the EC2 [{"Key", "Value"}] shape to a dictionary."""
    return {tag["Key"]: tag.get("Value", "") for tag in tag_list or []}


def diff_tags(desired: Dict[str, str], observed: Dict[str, str]) -> Tuple[Dict[str, str], List[str]]:
    """
    Compute the tag calls needed to converge observed tags on desired tags.

    Tags under the reserved "aws:" prefix are never removed.

    Returns:
        Tuple of (tags to create or overwrite, keys to delete)
    """
    to_set = {k: v for k, v in desired.items() if observed.get(k) != v}
    to_remove = sorted(
        k for k in observed
        if k not in desired and not k.lower().startswith(RESERVED_PREFIX)
    )
    return to_set, to_remove


def is_managed_instance(tags: Dict[str, str]) -> bool:
    """Check whether an instance carries this tool's management tag."""
    return tags.get("ManagedBy") == MANAGED_BY
