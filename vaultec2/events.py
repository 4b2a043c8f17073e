"""
Event logging utilities for NDJSON format.
"""

import json
import time
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, Optional

from .redact import redact_mapping
from .state import create_workspace_dir, get_workspace_dir


def emit_event(
    workspace: str,
    event_type: str,
    data: Dict[str, Any],
    run_id: Optional[str] = None,
    redact: Iterable[str] = (),
) -> Dict[str, Any]:
    """
    Emit an event to the workspace's logs.ndjson file.

    Args:
        workspace: Workspace name
        event_type: Event type (e.g., "RUN_START", "PLAN", "ERROR")
        data: Event data
        run_id: ID of the run emitting the event
        redact: Values to mask in the event data

    Returns:
        The written event
    """
    workspace_dir = create_workspace_dir(workspace)
    logs_file = workspace_dir / "logs.ndjson"

    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "run_id": run_id,
        "data": redact_mapping(data, redact),
    }

    with open(logs_file, "a") as f:
        f.write(json.dumps(event) + "\n")
        f.flush()  # Ensure immediate write

    return event


def read_events(workspace: str) -> list[Dict[str, Any]]:
    """
    Read all events from a workspace's logs.ndjson file.

    Args:
        workspace: Workspace name

    Returns:
        List of events
    """
    logs_file = get_workspace_dir(workspace) / "logs.ndjson"

    if not logs_file.exists():
        return []

    events = []
    with open(logs_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return events


def get_last_event(workspace: str) -> Optional[Dict[str, Any]]:
    """
    Get the last event from a workspace's logs.

    Args:
        workspace: Workspace name

    Returns:
        Last event or None if no events
    """
    events = read_events(workspace)
    return events[-1] if events else None


# Status reached once the event of that type is the latest lifecycle event
STATUS_MAP = {
    "RUN_START": "not_applied",
    "APPLY_START": "applying",
    "INSTANCE_CREATED": "applying",
    "INSTANCE_UPDATED": "applying",
    "INSTANCE_REPLACED": "applying",
    "APPLY_DONE": "applied",
    "DESTROY_START": "destroying",
    "DESTROY_DONE": "destroyed",
    "ERROR": "failed",
}


def get_status_from_events(workspace: str) -> str:
    """
    Determine workspace status from events.

    Events that do not change the lifecycle (secret reads, plans) are
    skipped, so a plan after an apply still reports "applied".

    Args:
        workspace: Workspace name

    Returns:
        Status string
    """
    status = "not_applied"
    for event in read_events(workspace):
        event_type = event.get("type", "")
        if event_type == "RUN_START":
            continue
        status = STATUS_MAP.get(event_type, status)
    return status


def tail_events(workspace: str, follow: bool = False, poll_interval: float = 0.1) -> Iterator[Dict[str, Any]]:
    """
    Generator that yields events, optionally waiting for new ones.

    Args:
        workspace: Workspace name
        follow: If True, continue watching for new events
        poll_interval: Seconds between size checks while following

    Yields:
        Event dictionaries
    """
    logs_file = get_workspace_dir(workspace) / "logs.ndjson"

    if not logs_file.exists():
        return

    position = 0
    while True:
        try:
            with open(logs_file, "r") as f:
                f.seek(position)
                for line in f:
                    line = line.strip()
                    if line:
                        try:
                            yield json.loads(line)
                        except json.JSONDecodeError:
                            continue
                position = f.tell()
        except FileNotFoundError:
            break

        if not follow:
            break
        time.sleep(poll_interval)


# Predefined event types for consistency
class EventTypes:
    RUN_START = "RUN_START"
    VARS_RESOLVED = "VARS_RESOLVED"
    VAULT_LOGIN = "VAULT_LOGIN"
    SECRET_READ = "SECRET_READ"
    PLAN = "PLAN"
    APPLY_START = "APPLY_START"
    INSTANCE_CREATED = "INSTANCE_CREATED"
    INSTANCE_UPDATED = "INSTANCE_UPDATED"
    INSTANCE_REPLACED = "INSTANCE_REPLACED"
    APPLY_DONE = "APPLY_DONE"
    DESTROY_START = "DESTROY_START"
    DESTROY_DONE = "DESTROY_DONE"
    ERROR = "ERROR"
    # Terraform engine events
    TF_INIT = "TF_INIT"
    TF_PLAN = "TF_PLAN"
    TF_APPLY_LINE = "TF_APPLY_LINE"
