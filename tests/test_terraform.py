"""
Tests for configuration rendering and the terraform CLI wrapper.
"""

import io
import json
import subprocess
from unittest.mock import Mock, patch

import pytest

from vaultec2 import terraform
from vaultec2.errors import ConfigurationError, TerraformError
from vaultec2.events import read_events
from vaultec2.variables import resolve_variables

from conftest import BASE_VARS


class TestRender:
    """Test rendering of the declarative configuration."""

    def test_variables_tf(self):
        text = terraform.render_variables_tf()

        assert 'variable "vault_address" {' in text
        assert 'default     = "ami-053b0d53c279acc90"' in text
        assert 'default     = "t2.micro"' in text
        assert 'default     = "kv"' in text
        secret_block = text.split('variable "vault_secret_id" {')[1].split("}")[0]
        assert "sensitive   = true" in secret_block
        assert "default" not in secret_block

    def test_main_tf(self):
        text = terraform.render_main_tf("dev", {"team": "infra"})

        assert 'data "vault_kv_secret_v2" "example"' in text
        assert 'path = "auth/approle/login"' in text
        assert "skip_child_token = true" in text
        assert 'Name   = "DemoEC2Instance"' in text
        assert 'Secret = data.vault_kv_secret_v2.example.data["username"]' in text
        assert '"Workspace" = "dev"' in text
        assert '"team" = "infra"' in text
        assert "Do not use instance tags to distribute real secrets" in text

    def test_main_tf_without_token_reuse(self):
        assert "skip_child_token = false" in terraform.render_main_tf(reuse_token=False)

    def test_tag_values_escaped(self):
        text = terraform.render_main_tf(extra_tags={"note": 'say "hi" ${var.x}'})

        assert '"note" = "say \\"hi\\" $${var.x}"' in text

    def test_reserved_tag_rejected(self):
        with pytest.raises(ConfigurationError):
            terraform.render_main_tf(extra_tags={"aws:owner": "x"})

    def test_outputs_tf(self):
        text = terraform.render_outputs_tf()

        assert 'output "ec2_instance_id"' in text
        assert "aws_instance.demo.id" in text
        assert 'output "vault_secret"' in text

    def test_write_configuration(self, tmp_path):
        written = terraform.write_configuration(tmp_path / "out")

        assert sorted(p.name for p in written) == ["main.tf", "outputs.tf", "variables.tf"]
        assert (tmp_path / "out" / "main.tf").read_text().startswith("terraform {")


class TestPlanSummary:

    def test_summary_line(self):
        output = "...\nPlan: 1 to add, 0 to change, 1 to destroy.\n"
        assert terraform.parse_plan_summary(output) == {"add": 1, "change": 0, "destroy": 1}

    def test_fallback_counts(self):
        output = "aws_instance.demo will be updated in-place\n"
        assert terraform.parse_plan_summary(output) == {"add": 0, "change": 1, "destroy": 0}


class TestRunner:
    """Test the subprocess wrapper with terraform mocked out."""

    def _process(self, lines, returncode=0):
        process = Mock()
        process.stdout = io.StringIO("".join(line + "\n" for line in lines))
        process.returncode = returncode
        return process

    @patch("vaultec2.terraform.shutil.which", return_value="/usr/bin/terraform")
    @patch("vaultec2.terraform.subprocess.Popen")
    def test_plan_success(self, mock_popen, mock_which, home):
        mock_popen.return_value = self._process(["Refreshing...", "Plan: 1 to add, 0 to change, 0 to destroy."])

        result = terraform.tf_plan("default", run_id="r-20260101-000000-abcd")

        assert result["add"] == 1
        args, kwargs = mock_popen.call_args
        assert args[0][:2] == ["terraform", "plan"]
        assert kwargs["cwd"] == home / "default" / "terraform"
        assert "Plan: 1 to add" in (home / "default" / "terraform" / "terraform.log").read_text()
        assert read_events("default")[-1]["type"] == "TF_PLAN"

    @patch("vaultec2.terraform.shutil.which", return_value="/usr/bin/terraform")
    @patch("vaultec2.terraform.subprocess.Popen")
    def test_apply_streams_redacted_lines(self, mock_popen, mock_which, home):
        mock_popen.return_value = self._process(["aws_instance.demo: Creating...", "secret is alice"])

        terraform.tf_apply("default", redact=["alice"])

        lines = [e["data"]["line"] for e in read_events("default") if e["type"] == "TF_APPLY_LINE"]
        assert lines == ["aws_instance.demo: Creating...", "secret is [REDACTED]"]

    @patch("vaultec2.terraform.shutil.which", return_value="/usr/bin/terraform")
    @patch("vaultec2.terraform.subprocess.Popen")
    def test_failure_raises(self, mock_popen, mock_which, home):
        mock_popen.return_value = self._process(["Error: invalid AMI ID"], returncode=1)

        with pytest.raises(TerraformError) as exc:
            terraform.tf_apply("default")

        assert exc.value.last_lines == ["Error: invalid AMI ID"]
        assert exc.value.category == "engine"

    @patch("vaultec2.terraform.shutil.which", return_value=None)
    def test_missing_binary(self, mock_which, home):
        with pytest.raises(TerraformError, match="not found"):
            terraform.tf_init("default")

    def test_prepare_writes_tfvars(self, home):
        variables = resolve_variables(BASE_VARS, environ={})

        terraform_dir = terraform.prepare("default", variables)

        tfvars = json.loads((terraform_dir / "terraform.tfvars.json").read_text())
        assert tfvars["vault_secret_id"] == "s1"
        assert tfvars["instance_type"] == "t2.micro"
        assert (terraform_dir / "main.tf").exists()

    @patch("vaultec2.terraform.subprocess.run")
    def test_get_outputs(self, mock_run, home):
        mock_run.return_value = Mock(stdout=json.dumps({
            "ec2_instance_id": {"value": "i-0tf", "type": "string", "sensitive": False},
            "vault_secret": {"value": "alice", "type": "string", "sensitive": True},
        }))

        assert terraform.get_terraform_outputs("default") == {"ec2_instance_id": "i-0tf", "vault_secret": "alice"}

    @patch("vaultec2.terraform.subprocess.run")
    def test_get_outputs_failure(self, mock_run, home):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["terraform"], stderr="no state")

        with pytest.raises(TerraformError, match="Failed to get terraform outputs"):
            terraform.get_terraform_outputs("default")
