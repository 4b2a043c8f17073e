"""
Tests for the command line interface.
"""

import json

import pytest
from click.testing import CliRunner

from vaultec2.cli.main import main

from conftest import BASE_VARS


@pytest.fixture
def runner(home, vault, ec2, monkeypatch):
    monkeypatch.setattr("vaultec2.vault.requests.Session", lambda: vault)
    monkeypatch.setattr("vaultec2.ec2.boto3.client", lambda service, region_name=None: ec2)
    return CliRunner()


def var_args():
    args = []
    for assignment in BASE_VARS:
        args.extend(["--var", assignment])
    return args


def test_apply_and_output(runner, ec2):
    result = runner.invoke(main, ["apply", "--auto-approve", *var_args()])

    assert result.exit_code == 0, result.output
    assert "Apply complete" in result.output
    assert "vault_secret = 'alice'" in result.output
    assert "plain text" in result.output

    result = runner.invoke(main, ["output", "vault_secret"])
    assert result.exit_code == 0
    assert result.output.strip() == "alice"

    result = runner.invoke(main, ["--json", "output"])
    data = json.loads(result.output)
    assert data["vault_secret"] == "alice"
    assert data["ec2_instance_id"] in ec2.instances


def test_apply_prompt_declined(runner, ec2):
    result = runner.invoke(main, ["apply", *var_args()], input="n\n")

    assert result.exit_code == 0
    assert "will be created" in result.output
    assert "Cancelled" in result.output
    assert ec2.calls == []


def test_missing_variables(runner):
    result = runner.invoke(main, ["plan"])

    assert result.exit_code == 1
    assert "Error [configuration]" in result.output
    assert "vault_address" in result.output


def test_bad_credentials(runner, ec2):
    result = runner.invoke(main, ["apply", "--auto-approve", *var_args(), "--var", "vault_secret_id=bad"])

    assert result.exit_code == 1
    assert "Error [authentication]" in result.output
    assert ec2.calls == []

    status = runner.invoke(main, ["status"])
    assert "Status: failed" in status.output
    assert "AppRole login failed" in status.output


def test_plan_json(runner):
    result = runner.invoke(main, ["--json", "plan", *var_args()])

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["status"] == "planned"
    assert data["plan"]["action"] == "create"
    assert data["plan"]["add"] == 1


def test_destroy(runner, ec2):
    runner.invoke(main, ["apply", "--auto-approve", *var_args()])

    result = runner.invoke(main, ["destroy", "--auto-approve", *var_args()])

    assert result.exit_code == 0, result.output
    assert "Destroy complete" in result.output
    assert all(i["State"]["Name"] == "terminated" for i in ec2.instances.values())
    assert runner.invoke(main, ["status"]).output.count("destroyed") == 1


def test_unknown_workspace(runner):
    assert runner.invoke(main, ["output", "--workspace", "nope"]).exit_code == 2
    assert runner.invoke(main, ["status", "--workspace", "nope"]).exit_code == 2
    assert runner.invoke(main, ["logs", "--workspace", "nope"]).exit_code == 2


def test_invalid_tag(runner):
    result = runner.invoke(main, ["plan", *var_args(), "--tag", "novalue"])

    assert result.exit_code == 1
    assert "Invalid tag format" in result.output


def test_logs_and_workspaces(runner):
    runner.invoke(main, ["apply", "--auto-approve", *var_args(), "--workspace", "dev"])

    logs = runner.invoke(main, ["logs", "--workspace", "dev"])
    assert logs.exit_code == 0
    assert "APPLY_DONE" in logs.output
    assert "alice" not in logs.output

    listing = runner.invoke(main, ["workspaces"])
    assert "dev" in listing.output.split()


def test_render(runner, tmp_path):
    target = tmp_path / "tf"

    result = runner.invoke(main, ["render", str(target), "--tag", "team=infra"])

    assert result.exit_code == 0, result.output
    assert (target / "variables.tf").exists()
    assert '"team" = "infra"' in (target / "main.tf").read_text()


def test_init(runner, home):
    result = runner.invoke(main, ["init", "--workspace", "staging"])

    assert result.exit_code == 0
    assert (home / "staging").is_dir()


def test_workspaces_json_reports_state_root(runner, home):
    runner.invoke(main, ["init", "--workspace", "dev"])

    result = runner.invoke(main, ["--json", "workspaces"])

    data = json.loads(result.output)
    assert data == {"home": str(home.resolve()), "workspaces": ["dev"]}
