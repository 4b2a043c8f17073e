"""
Shared fixtures: in-memory stand-ins for the Vault HTTP API and the EC2 client.
"""

import itertools
from unittest.mock import Mock

import pytest
import requests
from botocore.exceptions import ClientError

VAULT_ADDR = "http://v:8200"

BASE_VARS = [
    f"vault_address={VAULT_ADDR}",
    "vault_role_id=r1",
    "vault_secret_id=s1",
]


def client_error(code, operation="Operation", message="error"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


class FakeVault:
    """Answers AppRole logins and KV v2 reads like a Vault server."""

    def __init__(self):
        self.role_id = "r1"
        self.secret_id = "s1"
        self.documents = {("kv", "secret"): {"username": "alice"}}
        self.kv1_mounts = set()
        self.denied = set()
        self.unreachable = False
        self.logins = 0
        self.reads = []
        self.requests = []
        self.closed = False
        self._tokens = itertools.count(1)

    def request(self, method, url, timeout=None, json=None, headers=None):
        self.requests.append((method, url))
        if self.unreachable:
            raise requests.ConnectionError("connection refused")

        path = url.split("/v1/", 1)[1]
        if method == "POST" and path == "auth/approle/login":
            if json != {"role_id": self.role_id, "secret_id": self.secret_id}:
                return FakeResponse(400, {"errors": ["invalid role or secret ID"]})
            self.logins += 1
            return FakeResponse(200, {"auth": {"client_token": f"hvs.token{next(self._tokens)}"}})

        if method == "GET":
            token = (headers or {}).get("X-Vault-Token")
            if not token:
                return FakeResponse(403, {"errors": ["permission denied"]})
            mount, _, name = path.partition("/data/")
            self.reads.append((mount, name, token))
            if (mount, name) in self.denied:
                return FakeResponse(403, {"errors": ["permission denied"]})
            if mount in self.kv1_mounts:
                return FakeResponse(200, {"data": {"username": "alice"}})
            if (mount, name) not in self.documents:
                return FakeResponse(404, {"errors": []})
            return FakeResponse(200, {
                "data": {
                    "data": dict(self.documents[(mount, name)]),
                    "metadata": {"version": 3},
                },
            })

        return FakeResponse(405, {"errors": ["unsupported"]})

    def close(self):
        self.closed = True


class FakeEC2:
    """Keeps instances in memory and answers the EC2 calls the provider makes."""

    def __init__(self, valid_amis=("ami-053b0d53c279acc90", "ami-0newer")):
        self.valid_amis = set(valid_amis)
        self.instances = {}
        self.calls = []
        self._ids = itertools.count(1)

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))

    def mutating_calls(self):
        return [name for name, _ in self.calls if name != "describe_instances"]

    def get_waiter(self, name):
        waiter = Mock()
        waiter.name = name
        return waiter

    def run_instances(self, **kwargs):
        self._record("run_instances", **kwargs)
        if kwargs["ImageId"] not in self.valid_amis:
            raise client_error("InvalidAMIID.NotFound", "RunInstances", "The image id does not exist")
        instance_id = f"i-{next(self._ids):017x}"
        tags = kwargs["TagSpecifications"][0]["Tags"]
        self.instances[instance_id] = {
            "InstanceId": instance_id,
            "ImageId": kwargs["ImageId"],
            "InstanceType": kwargs["InstanceType"],
            "Tags": [dict(t) for t in tags],
            "State": {"Name": "running"},
        }
        return {"Instances": [{"InstanceId": instance_id}]}

    def describe_instances(self, InstanceIds):
        self._record("describe_instances", InstanceIds=InstanceIds)
        instance_id = InstanceIds[0]
        if instance_id not in self.instances:
            raise client_error("InvalidInstanceID.NotFound", "DescribeInstances")
        return {"Reservations": [{"Instances": [dict(self.instances[instance_id])]}]}

    def stop_instances(self, InstanceIds):
        self._record("stop_instances", InstanceIds=InstanceIds)
        self.instances[InstanceIds[0]]["State"] = {"Name": "stopped"}

    def start_instances(self, InstanceIds):
        self._record("start_instances", InstanceIds=InstanceIds)
        self.instances[InstanceIds[0]]["State"] = {"Name": "running"}

    def modify_instance_attribute(self, InstanceId, InstanceType):
        self._record("modify_instance_attribute", InstanceId=InstanceId, InstanceType=InstanceType)
        self.instances[InstanceId]["InstanceType"] = InstanceType["Value"]

    def create_tags(self, Resources, Tags):
        self._record("create_tags", Resources=Resources, Tags=Tags)
        instance = self.instances[Resources[0]]
        current = {t["Key"]: t["Value"] for t in instance["Tags"]}
        current.update({t["Key"]: t["Value"] for t in Tags})
        instance["Tags"] = [{"Key": k, "Value": v} for k, v in current.items()]

    def delete_tags(self, Resources, Tags):
        self._record("delete_tags", Resources=Resources, Tags=Tags)
        instance = self.instances[Resources[0]]
        removed = {t["Key"] for t in Tags}
        instance["Tags"] = [t for t in instance["Tags"] if t["Key"] not in removed]

    def terminate_instances(self, InstanceIds):
        self._record("terminate_instances", InstanceIds=InstanceIds)
        if InstanceIds[0] not in self.instances:
            raise client_error("InvalidInstanceID.NotFound", "TerminateInstances")
        self.instances[InstanceIds[0]]["State"] = {"Name": "terminated"}

    def tags_of(self, instance_id):
        return {t["Key"]: t["Value"] for t in self.instances[instance_id]["Tags"]}


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("VAULTEC2_HOME", str(tmp_path))
    for name in ("vault_address", "vault_role_id", "vault_secret_id"):
        monkeypatch.delenv(f"TF_VAR_{name}", raising=False)
    return tmp_path


@pytest.fixture
def vault():
    return FakeVault()


@pytest.fixture
def ec2():
    return FakeEC2()
