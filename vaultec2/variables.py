"""
Input variable declarations and resolution.

Values are resolved from declared defaults, ``TF_VAR_<name>`` environment
variables, var files and ``--var`` assignments, in increasing precedence.
Validation is type-only; a required variable with no value is reported
before any network call is made.
"""

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .redact import REDACTED

ENV_PREFIX = "TF_VAR_"


@dataclass(frozen=True)
class VariableSpec:
    """Declaration of a single string input."""
    name: str
    description: str
    default: Optional[str] = None
    sensitive: bool = False

    @property
    def required(self) -> bool:
        return self.default is None


VARIABLES: Tuple[VariableSpec, ...] = (
    VariableSpec("aws_region", "AWS region to deploy into", default="us-east-1"),
    VariableSpec("vault_address", "Address of the Vault server"),
    VariableSpec("vault_role_id", "AppRole role_id used to log in to Vault"),
    VariableSpec("vault_secret_id", "AppRole secret_id used to log in to Vault", sensitive=True),
    VariableSpec("vault_kv_mount", "Mount path of the KV v2 secrets engine", default="kv"),
    VariableSpec("vault_secret_name", "Name of the secret document in the KV mount", default="secret"),
    VariableSpec("ami_id", "AMI ID for the EC2 instance", default="ami-053b0d53c279acc90"),
    VariableSpec("instance_type", "EC2 instance type", default="t2.micro"),
)

VARIABLES_BY_NAME: Dict[str, VariableSpec] = {v.name: v for v in VARIABLES}

_TFVARS_LINE = re.compile(r'^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=\s*"((?:[^"\\]|\\.)*)"\s*$')


@dataclass(frozen=True)
class InputVariables:
    """Resolved input values for one run."""
    aws_region: str
    vault_address: str
    vault_role_id: str
    vault_secret_id: str
    vault_kv_mount: str
    vault_secret_name: str
    ami_id: str
    instance_type: str

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self.redacted().items())
        return f"InputVariables({fields})"

    def redacted(self) -> Dict[str, str]:
        """Values with sensitive inputs masked, safe to log."""
        return {
            spec.name: REDACTED if spec.sensitive else getattr(self, spec.name)
            for spec in VARIABLES
        }

    def as_tfvars(self) -> Dict[str, str]:
        """Values keyed by variable name, for terraform.tfvars.json."""
        return {spec.name: getattr(self, spec.name) for spec in VARIABLES}

    def sensitive_values(self) -> List[str]:
        return [getattr(self, spec.name) for spec in VARIABLES if spec.sensitive]


def parse_var_assignment(assignment: str) -> Tuple[str, str]:
    """
    Parse a CLI assignment in format "name=value".

    Args:
        assignment: Raw assignment string

    Returns:
        Tuple of (name, value)

    Raises:
        ConfigurationError: If the assignment is malformed
    """
    if "=" not in assignment:
        raise ConfigurationError(f"Invalid variable assignment: {assignment}. Expected 'name=value'")

    name, value = assignment.split("=", 1)
    name = name.strip()
    if not name:
        raise ConfigurationError(f"Invalid variable assignment: {assignment}. Name must not be empty")

    return name, value


def load_var_file(path: Path) -> Dict[str, Any]:
    """
    Load variable values from a JSON or tfvars-style file.

    JSON files must hold a single object. Other files are read line by line
    as ``name = "value"`` assignments; blank lines and ``#`` comments are
    ignored.

    Args:
        path: Path to the var file

    Returns:
        Dictionary of raw values (types are checked by the caller)
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Var file not found: {path}")

    text = path.read_text()

    if path.suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in var file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Var file {path} must contain a JSON object")
        return data

    values: Dict[str, Any] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _TFVARS_LINE.match(line)
        if not match:
            raise ConfigurationError(
                f"Invalid line in var file {path}:{lineno}",
                context='expected name = "value"',
            )
        name, raw = match.groups()
        try:
            values[name] = json.loads(f'"{raw}"')
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid escape in var file {path}:{lineno}: {e}") from e
    return values


def _check_value(name: str, value: Any, source: str) -> str:
    if name not in VARIABLES_BY_NAME:
        raise ConfigurationError(f"Undeclared variable '{name}' in {source}")
    if not isinstance(value, str):
        raise ConfigurationError(
            f"Variable '{name}' from {source} must be a string, got {type(value).__name__}"
        )
    return value


def resolve_variables(
    cli_vars: Iterable[str] = (),
    var_files: Iterable[Path] = (),
    environ: Optional[Mapping[str, str]] = None,
) -> InputVariables:
    """
    Resolve every declared variable.

    Args:
        cli_vars: ``name=value`` assignments from the command line
        var_files: Var files, applied in order
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        InputVariables with every value present

    Raises:
        ConfigurationError: If a value has the wrong type, a name is not
            declared, or a required variable has no value
    """
    if environ is None:
        environ = os.environ

    values: Dict[str, str] = {
        spec.name: spec.default for spec in VARIABLES if spec.default is not None
    }

    for spec in VARIABLES:
        env_key = ENV_PREFIX + spec.name
        if env_key in environ:
            values[spec.name] = environ[env_key]

    for var_file in var_files:
        for name, value in load_var_file(Path(var_file)).items():
            values[name] = _check_value(name, value, str(var_file))

    for assignment in cli_vars:
        name, value = parse_var_assignment(assignment)
        values[name] = _check_value(name, value, "--var")

    missing = [spec.name for spec in VARIABLES if spec.name not in values]
    if missing:
        raise ConfigurationError(
            f"No value for required variable(s): {', '.join(missing)}",
            context=f"set them with --var, a var file or {ENV_PREFIX}<name>",
        )

    return InputVariables(**values)
