"""
Planning: compare the declared instance with the observed one.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .models import InstanceSpec, ObservedInstance
from .redact import REDACTED
from .tags import diff_tags

SENSITIVE_TAGS = {"Secret"}


class ActionKind(Enum):
    """What a plan does to the instance."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass
class AttributeChange:
    """One differing attribute."""
    name: str
    before: Any
    after: Any
    force_new: bool = False

    def render(self) -> str:
        before, after = self.before, self.after
        if self.name in {f"tags.{k}" for k in SENSITIVE_TAGS}:
            before = REDACTED if before is not None else None
            after = REDACTED if after is not None else None
        marker = "  # forces replacement" if self.force_new else ""
        return f"{self.name}: {before!r} -> {after!r}{marker}"


@dataclass
class Plan:
    """Actions needed to converge recorded state on the declaration."""
    action: ActionKind
    desired: Optional[InstanceSpec] = None
    observed: Optional[ObservedInstance] = None
    changes: List[AttributeChange] = field(default_factory=list)
    tags_to_set: Dict[str, str] = field(default_factory=dict)
    tags_to_remove: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return self.action is not ActionKind.NO_OP

    @property
    def type_changed(self) -> bool:
        return any(c.name == "instance_type" for c in self.changes)

    def summary(self) -> Dict[str, int]:
        """Resource counts in the form of a terraform plan summary."""
        counts = {"add": 0, "change": 0, "destroy": 0}
        if self.action is ActionKind.CREATE:
            counts["add"] = 1
        elif self.action is ActionKind.UPDATE:
            counts["change"] = 1
        elif self.action is ActionKind.REPLACE:
            counts["add"] = 1
            counts["destroy"] = 1
        elif self.action is ActionKind.DELETE:
            counts["destroy"] = 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "instance_id": self.observed.instance_id if self.observed else None,
            "changes": [c.render() for c in self.changes],
            **self.summary(),
        }

    def render(self) -> str:
        counts = self.summary()
        if not self.has_changes:
            return "No changes. The instance matches the configuration."

        target = self.observed.instance_id if self.observed else "(new instance)"
        lines = [f"aws_instance.demo {target} will be {_VERBS[self.action]}"]
        lines.extend(f"  {c.render()}" for c in self.changes)
        lines.append(
            f"Plan: {counts['add']} to add, {counts['change']} to change, {counts['destroy']} to destroy."
        )
        return "\n".join(lines)


_VERBS = {
    ActionKind.CREATE: "created",
    ActionKind.UPDATE: "updated in-place",
    ActionKind.REPLACE: "replaced",
    ActionKind.DELETE: "destroyed",
}


def plan_instance(desired: InstanceSpec, observed: Optional[ObservedInstance]) -> Plan:
    """
    Plan the changes for an apply.

    Args:
        desired: Declared instance
        observed: Instance currently recorded and still present, if any

    Returns:
        Plan
    """
    if observed is None:
        changes = [
            AttributeChange("ami", None, desired.ami),
            AttributeChange("instance_type", None, desired.instance_type),
        ]
        changes.extend(AttributeChange(f"tags.{k}", None, v) for k, v in sorted(desired.tags.items()))
        return Plan(ActionKind.CREATE, desired=desired, changes=changes)

    changes: List[AttributeChange] = []
    if observed.ami != desired.ami:
        changes.append(AttributeChange("ami", observed.ami, desired.ami, force_new=True))
    if observed.instance_type != desired.instance_type:
        changes.append(AttributeChange("instance_type", observed.instance_type, desired.instance_type))

    to_set, to_remove = diff_tags(desired.tags, observed.tags)
    changes.extend(AttributeChange(f"tags.{k}", observed.tags.get(k), v) for k, v in sorted(to_set.items()))
    changes.extend(AttributeChange(f"tags.{k}", observed.tags[k], None) for k in to_remove)

    if any(c.force_new for c in changes):
        action = ActionKind.REPLACE
    elif changes:
        action = ActionKind.UPDATE
    else:
        action = ActionKind.NO_OP

    return Plan(
        action,
        desired=desired,
        observed=observed,
        changes=changes,
        tags_to_set=to_set,
        tags_to_remove=to_remove,
    )


def plan_destroy(observed: Optional[ObservedInstance]) -> Plan:
    """Plan the removal of the recorded instance."""
    if observed is None:
        return Plan(ActionKind.NO_OP)
    return Plan(ActionKind.DELETE, observed=observed)
