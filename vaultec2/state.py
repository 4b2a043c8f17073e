"""
Workspace directories and recorded run state.

Each workspace lives in ``$VAULTEC2_HOME/<workspace>`` and holds:

* ``state.json``   - the instance as last committed by the provider
* ``outputs.json`` - outputs of the last successful apply
* ``logs.ndjson``  - run events
* ``terraform/``   - working directory of the terraform engine

The state file records the tag values, including the value read from Vault,
in plain text.
"""

import json
import os
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from .errors import StateError, StateLockedError
from .ids import is_valid_workspace, new_lineage
from .models import InstanceSpec, RunOutputs

STATE_VERSION = 1


@dataclass
class RecordedInstance:
    """The managed instance as recorded after the last committed call."""
    instance_id: str
    spec: InstanceSpec

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.instance_id, **self.spec.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordedInstance":
        return cls(instance_id=data["id"], spec=InstanceSpec.from_dict(data))


@dataclass
class RecordedState:
    """Contents of state.json."""
    serial: int = 0
    lineage: str = field(default_factory=new_lineage)
    region: Optional[str] = None
    instance: Optional[RecordedInstance] = None
    outputs: Optional[RunOutputs] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "serial": self.serial,
            "lineage": self.lineage,
            "region": self.region,
            "instance": self.instance.to_dict() if self.instance else None,
            "outputs": self.outputs.as_dict() if self.outputs else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordedState":
        if data.get("version") != STATE_VERSION:
            raise StateError(f"Unsupported state version: {data.get('version')}")
        instance = data.get("instance")
        outputs = data.get("outputs")
        return cls(
            serial=data.get("serial", 0),
            lineage=data.get("lineage") or new_lineage(),
            region=data.get("region"),
            instance=RecordedInstance.from_dict(instance) if instance else None,
            outputs=RunOutputs.from_dict(outputs) if outputs else None,
        )


def get_home() -> Path:
    """
    Get the vaultec2 home directory.

    Returns:
        Path: Home directory holding all workspaces
    """
    home = os.environ.get("VAULTEC2_HOME", ".vaultec2")
    return Path(home).resolve()


def get_workspace_dir(workspace: str) -> Path:
    """
    Get the directory for a workspace.

    Args:
        workspace: Workspace name

    Returns:
        Path: Workspace directory

    Raises:
        ValueError: If the workspace name is invalid
    """
    if not is_valid_workspace(workspace):
        raise ValueError(f"Invalid workspace name: {workspace}")

    return get_home() / workspace


def create_workspace_dir(workspace: str) -> Path:
    """
    Create workspace directory and return its path.

    Args:
        workspace: Workspace name

    Returns:
        Path: Created workspace directory
    """
    workspace_dir = get_workspace_dir(workspace)
    workspace_dir.mkdir(parents=True, exist_ok=True)
    return workspace_dir


def read_state(workspace: str) -> RecordedState:
    """
    Read recorded state, or an empty state if none was written yet.

    Args:
        workspace: Workspace name

    Returns:
        RecordedState

    Raises:
        StateError: If state.json is unreadable
    """
    state_file = get_workspace_dir(workspace) / "state.json"

    if not state_file.exists():
        return RecordedState()

    try:
        with open(state_file, "r") as f:
            return RecordedState.from_dict(json.load(f))
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise StateError(f"Corrupt state file: {state_file}", context=str(e)) from e


def write_state(workspace: str, state: RecordedState) -> RecordedState:
    """
    Persist state, incrementing its serial.

    The file is written to a temporary path and renamed into place.

    Args:
        workspace: Workspace name
        state: State to write

    Returns:
        The written state
    """
    workspace_dir = create_workspace_dir(workspace)
    state.serial += 1

    tmp_file = workspace_dir / "state.json.tmp"
    with open(tmp_file, "w") as f:
        json.dump(state.to_dict(), f, indent=2)
    os.replace(tmp_file, workspace_dir / "state.json")

    return state


def write_outputs_json(workspace: str, outputs: RunOutputs) -> None:
    """
    Write run outputs to outputs.json.

    Args:
        workspace: Workspace name
        outputs: Outputs of the last apply
    """
    workspace_dir = create_workspace_dir(workspace)

    with open(workspace_dir / "outputs.json", "w") as f:
        json.dump(outputs.as_dict(), f, indent=2)


def read_outputs_json(workspace: str) -> Optional[RunOutputs]:
    """
    Read run outputs from outputs.json.

    Args:
        workspace: Workspace name

    Returns:
        RunOutputs or None if not found
    """
    outputs_file = get_workspace_dir(workspace) / "outputs.json"

    if not outputs_file.exists():
        return None

    with open(outputs_file, "r") as f:
        return RunOutputs.from_dict(json.load(f))


def remove_outputs_json(workspace: str) -> None:
    outputs_file = get_workspace_dir(workspace) / "outputs.json"
    if outputs_file.exists():
        outputs_file.unlink()


@contextmanager
def state_lock(workspace: str) -> Iterator[Path]:
    """
    Hold the workspace lock for the duration of a run.

    Raises:
        StateLockedError: If another run holds the lock
    """
    workspace_dir = create_workspace_dir(workspace)
    lock_file = workspace_dir / ".lock"

    try:
        fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        raise StateLockedError(
            f"Workspace {workspace} is locked by another run",
            context=f"remove {lock_file} if no other run is active",
        ) from None

    try:
        os.write(fd, str(os.getpid()).encode())
        os.close(fd)
        yield lock_file
    finally:
        if lock_file.exists():
            lock_file.unlink()


def list_workspaces() -> list[str]:
    """
    List all workspace names.

    Returns:
        Sorted list of workspace names
    """
    home = get_home()

    if not home.exists():
        return []

    return sorted(
        item.name for item in home.iterdir()
        if item.is_dir() and is_valid_workspace(item.name)
    )


def workspace_exists(workspace: str) -> bool:
    """
    Check if a workspace exists.

    Args:
        workspace: Workspace name

    Returns:
        bool: True if the workspace directory exists
    """
    return get_workspace_dir(workspace).exists()


def remove_workspace(workspace: str) -> None:
    """
    Remove workspace directory and all its contents.

    Args:
        workspace: Workspace name
    """
    workspace_dir = get_workspace_dir(workspace)

    if workspace_dir.exists():
        shutil.rmtree(workspace_dir)
