"""Main CLI entrypoint for vaultec2."""

import functools
import json
import sys
from pathlib import Path
from typing import Any, Dict

import click

from .. import engine
from ..config import configure_logging, load_settings
from ..errors import VaultEc2Error
from ..events import get_status_from_events, read_events, tail_events
from ..state import create_workspace_dir, get_home, list_workspaces, remove_workspace, workspace_exists
from ..tags import parse_user_tags
from .. import terraform

TAG_WARNING = (
    "Note: the Secret tag is plain text and visible to anyone who can describe "
    "the instance. Do not use this to distribute real secrets."
)


@click.group()
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.option('--verbose', '-v', is_flag=True, help='Log progress to stderr')
@click.pass_context
def main(ctx, output_json, verbose):
    """vaultec2 - Provision an EC2 instance tagged with a value read from Vault."""
    ctx.ensure_object(dict)
    try:
        settings = load_settings()
    except VaultEc2Error as e:
        _fail(e)
    configure_logging("INFO" if verbose else settings.log_level)
    ctx.obj['json'] = output_json
    ctx.obj['settings'] = settings


def _json_output(data: Dict[str, Any]) -> None:
    """Output data as JSON."""
    click.echo(json.dumps(data, indent=None))


def _human_output(message: str) -> None:
    """Output human-readable message."""
    if not click.get_current_context().obj.get('json', False):
        click.echo(message)


def _fail(error: Exception, exit_code: int = 1) -> None:
    ctx = click.get_current_context()
    category = getattr(error, 'category', 'error')
    if ctx.obj and ctx.obj.get('json'):
        _json_output({'error': str(error), 'category': category})
    else:
        click.echo(f"❌ Error [{category}]: {error}", err=True)
    sys.exit(exit_code)


def run_options(func):
    """Options shared by plan, apply and destroy."""
    @click.option('--workspace', '-w', default='default', show_default=True, help='Workspace name')
    @click.option('--var', 'cli_vars', multiple=True, help="Variable assignment 'name=value' (repeatable)")
    @click.option('--var-file', 'var_files', multiple=True, type=click.Path(dir_okay=False),
                  help='JSON or tfvars file with variable values (repeatable)')
    @click.option('--tag', 'tags', multiple=True, help="Extra instance tag 'key=value' (repeatable)")
    @click.option('--engine', 'engine_name', type=click.Choice(engine.ENGINES), default='native',
                  show_default=True, help='Reconciliation engine')
    @click.option('--no-token-reuse', is_flag=True, help='Log in to Vault again before every request')
    @functools.wraps(func)
    def wrapper(*args, workspace, cli_vars, var_files, tags, engine_name, no_token_reuse, **kwargs):
        settings = click.get_current_context().obj['settings']
        try:
            extra_tags = parse_user_tags(list(tags))
        except ValueError as e:
            _fail(e)
        options = engine.RunOptions(
            workspace=workspace,
            cli_vars=list(cli_vars),
            var_files=[Path(p) for p in var_files],
            extra_tags=extra_tags,
            engine=engine_name,
            reuse_token=settings.reuse_token and not no_token_reuse,
            http_timeout=settings.http_timeout,
        )
        return func(*args, options=options, **kwargs)
    return wrapper


def _confirm(auto_approve: bool, prompt: str):
    if auto_approve:
        return None

    def confirm(plan_text: str) -> bool:
        _human_output(plan_text)
        return click.confirm(prompt)
    return confirm


def _report(result: engine.RunResult) -> None:
    if click.get_current_context().obj.get('json'):
        _json_output(result.to_dict())
        return

    if result.plan_text:
        _human_output(result.plan_text)
    elif result.plan is not None and result.status != 'cancelled':
        _human_output(result.plan.render())

    if result.status == 'cancelled':
        _human_output("❌ Cancelled, no changes made")
    elif result.status == 'applied':
        _human_output(f"✅ Apply complete ({result.engine} engine)")
    elif result.status == 'destroyed':
        _human_output(f"✅ Destroy complete ({result.engine} engine)")

    if result.outputs:
        _human_output("\nOutputs:\n")
        for name, value in result.outputs.as_dict().items():
            _human_output(f"{name} = {value!r}")
        _human_output(f"\n{TAG_WARNING}")


@main.command()
@click.option('--workspace', '-w', default='default', show_default=True, help='Workspace name')
@click.option('--engine', 'engine_name', type=click.Choice(engine.ENGINES), default='native', show_default=True)
@click.pass_context
def init(ctx, workspace, engine_name):
    """Create a workspace (and run terraform init for that engine)."""
    try:
        workspace_dir = create_workspace_dir(workspace)
        if engine_name == 'terraform':
            terraform.write_configuration(terraform.get_terraform_dir(workspace), workspace)
            terraform.tf_init(workspace)
    except (VaultEc2Error, ValueError) as e:
        _fail(e)

    if ctx.obj['json']:
        _json_output({'workspace': workspace, 'path': str(workspace_dir), 'engine': engine_name})
    else:
        _human_output(f"✅ Workspace '{workspace}' initialized at {workspace_dir}")


@main.command(name='plan')
@run_options
def plan_cmd(options):
    """Show the changes an apply would make."""
    try:
        result = engine.plan(options)
    except (VaultEc2Error, ValueError) as e:
        _fail(e)
    _report(result)


@main.command(name='apply')
@run_options
@click.option('--auto-approve', is_flag=True, help='Skip the confirmation prompt')
def apply_cmd(options, auto_approve):
    """Fetch the secret and converge the instance."""
    try:
        result = engine.apply(options, confirm=_confirm(auto_approve, "Apply these changes?"))
    except (VaultEc2Error, ValueError) as e:
        _fail(e)
    _report(result)


@main.command(name='destroy')
@run_options
@click.option('--auto-approve', is_flag=True, help='Skip the confirmation prompt')
@click.option('--purge', is_flag=True, help='Remove the workspace directory afterwards')
def destroy_cmd(options, auto_approve, purge):
    """Terminate the managed instance."""
    try:
        result = engine.destroy(options, confirm=_confirm(auto_approve, "Destroy the instance?"))
    except (VaultEc2Error, ValueError) as e:
        _fail(e)
    _report(result)

    if purge and result.status == 'destroyed':
        remove_workspace(options.workspace)
        _human_output(f"🗑️  Removed workspace '{options.workspace}'")


@main.command()
@click.argument('name', required=False)
@click.option('--workspace', '-w', default='default', show_default=True, help='Workspace name')
@click.pass_context
def output(ctx, name, workspace):
    """Print outputs of the last apply."""
    try:
        if not workspace_exists(workspace):
            _fail(ValueError(f"Workspace {workspace} not found"), exit_code=2)
        outputs = engine.outputs(workspace)
    except ValueError as e:
        _fail(e)

    if outputs is None:
        _fail(ValueError(f"No outputs recorded for workspace {workspace}; run apply first"), exit_code=2)

    values = outputs.as_dict()
    if name is not None:
        if name not in values:
            _fail(ValueError(f"Output '{name}' not found"), exit_code=2)
        values = {name: values[name]}

    if ctx.obj['json']:
        _json_output(values)
    elif name is not None:
        click.echo(values[name])
    else:
        for key, value in values.items():
            click.echo(f"{key} = {value!r}")


@main.command()
@click.option('--workspace', '-w', default='default', show_default=True, help='Workspace name')
@click.pass_context
def status(ctx, workspace):
    """Show the workspace status derived from its events."""
    try:
        if not workspace_exists(workspace):
            _fail(ValueError(f"Workspace {workspace} not found"), exit_code=2)
        status_value = get_status_from_events(workspace)
        events = read_events(workspace)
    except ValueError as e:
        _fail(e)

    last_error = next((e for e in reversed(events) if e.get('type') == 'ERROR'), None)
    if ctx.obj['json']:
        _json_output({
            'workspace': workspace,
            'status': status_value,
            'last_event': events[-1] if events else None,
            'last_error': last_error['data'] if last_error else None,
        })
        return

    _human_output(f"Workspace: {workspace}")
    _human_output(f"Status: {status_value}")
    if status_value == 'failed' and last_error:
        _human_output(f"Reason: {last_error['data'].get('reason')}")
        if last_error['data'].get('hint'):
            _human_output(f"Hint: {last_error['data']['hint']}")


@main.command()
@click.option('--workspace', '-w', default='default', show_default=True, help='Workspace name')
@click.option('--follow', '-f', is_flag=True, help='Follow events in real-time')
@click.pass_context
def logs(ctx, workspace, follow):
    """Show the workspace event log."""
    try:
        if not workspace_exists(workspace):
            _fail(ValueError(f"Workspace {workspace} not found"), exit_code=2)
        for event in tail_events(workspace, follow=follow):
            if ctx.obj['json']:
                _json_output(event)
            else:
                _print_event_human(event)
    except KeyboardInterrupt:
        _human_output("\n👋 Stopped following logs")
    except ValueError as e:
        _fail(e)


def _print_event_human(event: Dict[str, Any]) -> None:
    ts = event.get('ts', '')[:19]
    data = event.get('data') or {}
    details = ", ".join(f"{k}={v}" for k, v in data.items()) if data else ""
    click.echo(f"{ts} {event.get('type', '?'):<18} {details}")


@main.command()
@click.pass_context
def workspaces(ctx):
    """List workspaces."""
    names = list_workspaces()
    if ctx.obj['json']:
        _json_output({'home': str(get_home()), 'workspaces': names})
    else:
        for name in names:
            click.echo(name)


@main.command()
@click.argument('directory', type=click.Path(file_okay=False))
@click.option('--workspace', '-w', default='default', show_default=True, help='Workspace name tag')
@click.option('--tag', 'tags', multiple=True, help="Extra instance tag 'key=value' (repeatable)")
@click.option('--no-token-reuse', is_flag=True, help='Let the vault provider create a child token')
@click.pass_context
def render(ctx, directory, workspace, tags, no_token_reuse):
    """Write the equivalent terraform configuration to DIRECTORY."""
    try:
        written = terraform.write_configuration(
            Path(directory), workspace, parse_user_tags(list(tags)), reuse_token=not no_token_reuse
        )
    except (VaultEc2Error, ValueError) as e:
        _fail(e)

    if ctx.obj['json']:
        _json_output({'files': [str(p) for p in written]})
    else:
        for path in written:
            _human_output(f"📄 {path}")
        _human_output(TAG_WARNING)


if __name__ == '__main__':
    main()
