"""
Data models shared by the lookup, declaration and reconciliation stages.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import MissingSecretKeyError


@dataclass
class SecretDocument:
    """A KV v2 document read from Vault."""
    mount: str
    name: str
    data: Dict[str, str]
    version: Optional[int] = None

    def get(self, key: str) -> str:
        if key not in self.data:
            raise MissingSecretKeyError(key, self.mount, self.name)
        return self.data[key]

    @property
    def path(self) -> str:
        return f"{self.mount}/{self.name}"


@dataclass
class InstanceSpec:
    """Desired state of the single compute instance."""
    ami: str
    instance_type: str
    tags: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"ami": self.ami, "instance_type": self.instance_type, "tags": dict(self.tags)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceSpec":
        return cls(ami=data["ami"], instance_type=data["instance_type"], tags=dict(data.get("tags", {})))


@dataclass
class ObservedInstance:
    """An instance as reported by describe_instances."""
    instance_id: str
    ami: str
    instance_type: str
    tags: Dict[str, str]
    state: str  # "pending", "running", "stopping", "stopped", ...

    def as_spec(self) -> InstanceSpec:
        return InstanceSpec(ami=self.ami, instance_type=self.instance_type, tags=dict(self.tags))


@dataclass
class RunOutputs:
    """Named outputs readable after a successful run."""
    ec2_instance_id: str
    vault_secret: str

    def as_dict(self) -> Dict[str, str]:
        return {"ec2_instance_id": self.ec2_instance_id, "vault_secret": self.vault_secret}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunOutputs":
        return cls(ec2_instance_id=data["ec2_instance_id"], vault_secret=data["vault_secret"])
