"""
Terraform engine: render the declarative configuration and drive the
terraform CLI in a workspace.
"""

import json
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from .declaration import INSTANCE_NAME, SECRET_KEY
from .errors import TerraformError
from .events import EventTypes, emit_event
from .state import create_workspace_dir
from .tags import base_tags, validate_tags
from .variables import VARIABLES, InputVariables

TERRAFORM_DIR = "terraform"
PLAN_SUMMARY = re.compile(r"Plan: (\d+) to add, (\d+) to change, (\d+) to destroy")

PROVIDERS_BLOCK = """\
terraform {
  required_providers {
    aws = {
      source  = "hashicorp/aws"
      version = "~> 5.0"
    }
    vault = {
      source  = "hashicorp/vault"
      version = "~> 3.0"
    }
  }
}
"""


def _hcl_string(value: str) -> str:
    # JSON string escaping is valid HCL; "${" and "%{" would start a template
    return json.dumps(value).replace("${", "$${").replace("%{", "%%{")


def render_variables_tf() -> str:
    """Render variables.tf from the declared inputs."""
    blocks = []
    for spec in VARIABLES:
        lines = [f'variable "{spec.name}" {{']
        lines.append(f"  description = {_hcl_string(spec.description)}")
        lines.append("  type        = string")
        if spec.default is not None:
            lines.append(f"  default     = {_hcl_string(spec.default)}")
        if spec.sensitive:
            lines.append("  sensitive   = true")
        lines.append("}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


def render_main_tf(workspace: str = "default", extra_tags: Optional[Dict[str, str]] = None,
                   reuse_token: bool = True) -> str:
    """
    Render main.tf: providers, the KV v2 data source and the instance.

    Args:
        workspace: Workspace name, recorded as a tag
        extra_tags: User tags added to the instance
        reuse_token: Use the AppRole login token directly instead of a child token

    Returns:
        HCL text
    """
    tags = base_tags(workspace, extra_tags)
    tags.pop("Name", None)
    tags.pop("Secret", None)
    validate_tags(tags)

    tag_lines = [f"    Name   = {_hcl_string(INSTANCE_NAME)}"]
    tag_lines.append(f'    Secret = data.vault_kv_secret_v2.example.data["{SECRET_KEY}"]')
    tag_lines.extend(f"    {_hcl_string(k)} = {_hcl_string(v)}" for k, v in sorted(tags.items()))

    return f"""{PROVIDERS_BLOCK}
provider "aws" {{
  region = var.aws_region
}}

provider "vault" {{
  address          = var.vault_address
  skip_child_token = {"true" if reuse_token else "false"}

  auth_login {{
    path = "auth/approle/login"

    parameters = {{
      role_id   = var.vault_role_id
      secret_id = var.vault_secret_id
    }}
  }}
}}

data "vault_kv_secret_v2" "example" {{
  mount = var.vault_kv_mount
  name  = var.vault_secret_name
}}

# Demonstration only: tags are plain text and visible through the EC2 API.
# Do not use instance tags to distribute real secrets.
resource "aws_instance" "demo" {{
  ami           = var.ami_id
  instance_type = var.instance_type

  tags = {{
{chr(10).join(tag_lines)}
  }}
}}
"""


def render_outputs_tf() -> str:
    return f"""output "ec2_instance_id" {{
  value = aws_instance.demo.id
}}

output "vault_secret" {{
  value     = data.vault_kv_secret_v2.example.data["{SECRET_KEY}"]
  sensitive = true
}}
"""


def render_configuration(workspace: str = "default", extra_tags: Optional[Dict[str, str]] = None,
                         reuse_token: bool = True) -> Dict[str, str]:
    """Render every configuration file, keyed by file name."""
    return {
        "variables.tf": render_variables_tf(),
        "main.tf": render_main_tf(workspace, extra_tags, reuse_token),
        "outputs.tf": render_outputs_tf(),
    }


def write_configuration(target_dir: Path, workspace: str = "default",
                        extra_tags: Optional[Dict[str, str]] = None,
                        reuse_token: bool = True) -> List[Path]:
    """
    Write the configuration files into a directory.

    Args:
        target_dir: Directory to write into (created if missing)

    Returns:
        Paths of the written files
    """
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for file_name, content in render_configuration(workspace, extra_tags, reuse_token).items():
        path = target_dir / file_name
        path.write_text(content)
        written.append(path)
    return written


def get_terraform_dir(workspace: str) -> Path:
    terraform_dir = create_workspace_dir(workspace) / TERRAFORM_DIR
    terraform_dir.mkdir(exist_ok=True)
    return terraform_dir


def _write_tfvars(workspace: str, variables: InputVariables) -> None:
    """
    Write terraform.tfvars.json file.

    Args:
        workspace: Workspace name
        variables: Resolved input variables
    """
    tfvars_file = get_terraform_dir(workspace) / "terraform.tfvars.json"

    with open(tfvars_file, "w") as f:
        json.dump(variables.as_tfvars(), f, indent=2)
    tfvars_file.chmod(0o600)


def _run_terraform_command(
    workspace: str,
    command: List[str],
    run_id: Optional[str] = None,
    redact: List[str] = (),
) -> str:
    """
    Run a terraform command in the workspace's terraform directory.

    Args:
        workspace: Workspace name
        command: Terraform command to run
        run_id: Run ID recorded on events
        redact: Values to mask in emitted events

    Returns:
        Combined stdout/stderr output

    Raises:
        TerraformError: If terraform is missing or exits non-zero
    """
    if shutil.which(command[0]) is None:
        raise TerraformError(f"{command[0]} executable not found on PATH")

    terraform_dir = get_terraform_dir(workspace)
    terraform_log = terraform_dir / "terraform.log"

    process = subprocess.Popen(
        command,
        cwd=terraform_dir,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        bufsize=1,
    )

    output_lines = []
    with open(terraform_log, "a") as log_file:
        log_file.write(f"=== {' '.join(command)} ===\n")

        for line in process.stdout:
            line = line.rstrip()
            output_lines.append(line)
            log_file.write(line + "\n")
            log_file.flush()

            # Emit line events for apply/destroy commands
            if ("apply" in command or "destroy" in command) and line.strip():
                emit_event(workspace, EventTypes.TF_APPLY_LINE, {"line": line}, run_id=run_id, redact=redact)

    process.wait()
    output = "\n".join(output_lines)

    if process.returncode != 0:
        raise TerraformError(
            f"Terraform command failed: {' '.join(command)}",
            last_lines=output_lines[-40:],
        )

    return output


def prepare(workspace: str, variables: InputVariables, extra_tags: Optional[Dict[str, str]] = None,
            reuse_token: bool = True) -> Path:
    """Write configuration and tfvars into the workspace's terraform directory."""
    terraform_dir = get_terraform_dir(workspace)
    write_configuration(terraform_dir, workspace, extra_tags, reuse_token)
    _write_tfvars(workspace, variables)
    return terraform_dir


def tf_init(workspace: str, run_id: Optional[str] = None) -> None:
    """
    Run terraform init.

    Args:
        workspace: Workspace name
        run_id: Run ID recorded on events
    """
    _run_terraform_command(workspace, ["terraform", "init", "-input=false", "-no-color"], run_id)
    emit_event(workspace, EventTypes.TF_INIT, {"ok": True}, run_id=run_id)


def parse_plan_summary(output: str) -> Dict[str, int]:
    """
    Extract resource counts from terraform plan output.

    Returns:
        Dictionary with "add", "change" and "destroy" counts
    """
    match = PLAN_SUMMARY.search(output)
    if match:
        add, change, destroy = (int(g) for g in match.groups())
        return {"add": add, "change": change, "destroy": destroy}

    return {
        "add": output.count("will be created") + output.count("must be replaced"),
        "change": output.count("will be updated in-place"),
        "destroy": output.count("will be destroyed") + output.count("must be replaced"),
    }


def tf_plan(workspace: str, run_id: Optional[str] = None, redact: List[str] = ()) -> Dict[str, Any]:
    """
    Run terraform plan.

    Args:
        workspace: Workspace name
        run_id: Run ID recorded on events
        redact: Values to mask in emitted events

    Returns:
        Plan counts and the (redacted) plan text
    """
    output = _run_terraform_command(
        workspace, ["terraform", "plan", "-input=false", "-no-color"], run_id, redact
    )
    summary = parse_plan_summary(output)
    emit_event(workspace, EventTypes.TF_PLAN, {**summary, "ok": True}, run_id=run_id)
    return {**summary, "output": output}


def tf_apply(workspace: str, run_id: Optional[str] = None, redact: List[str] = ()) -> str:
    return _run_terraform_command(
        workspace, ["terraform", "apply", "-auto-approve", "-input=false", "-no-color"], run_id, redact
    )


def tf_destroy(workspace: str, run_id: Optional[str] = None, redact: List[str] = ()) -> str:
    return _run_terraform_command(
        workspace, ["terraform", "destroy", "-auto-approve", "-input=false", "-no-color"], run_id, redact
    )


def get_terraform_outputs(workspace: str) -> Dict[str, Any]:
    """
    Get terraform outputs as plain values.

    Args:
        workspace: Workspace name

    Returns:
        Dictionary of output name to value

    Raises:
        TerraformError: If terraform output fails or returns invalid JSON
    """
    terraform_dir = get_terraform_dir(workspace)

    try:
        result = subprocess.run(
            ["terraform", "output", "-json", "-no-color"],
            cwd=terraform_dir,
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError as e:
        raise TerraformError("terraform executable not found on PATH") from e
    except subprocess.CalledProcessError as e:
        raise TerraformError("Failed to get terraform outputs", last_lines=(e.stderr or "").splitlines()[-40:]) from e

    try:
        raw = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        raise TerraformError(f"Failed to parse terraform outputs: {e}") from e

    return {name: item.get("value") for name, item in raw.items()}
