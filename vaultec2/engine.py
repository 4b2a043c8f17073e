"""
Run orchestration: plan, apply, destroy and output.

A run is a strict chain. Variables are resolved before any network call,
the Vault lookup completes before any EC2 call, and the declared tags are
evaluated before the instance is touched. Every failure is recorded as an
ERROR event and re-raised unchanged.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .config import DEFAULT_HTTP_TIMEOUT, ComputeProviderConfig, SecretStoreConfig, provider_configs
from .declaration import SECRET_KEY, bind_outputs, declare_instance
from .ec2 import ComputeProvider
from .errors import ConfigurationError, ProviderError, VaultEc2Error
from .events import EventTypes, emit_event
from .ids import new_run_id
from .models import InstanceSpec, ObservedInstance, RunOutputs, SecretDocument
from .reconcile import ActionKind, Plan, plan_destroy, plan_instance
from .tags import is_managed_instance
from .state import (
    RecordedInstance,
    RecordedState,
    create_workspace_dir,
    read_outputs_json,
    read_state,
    remove_outputs_json,
    state_lock,
    write_outputs_json,
    write_state,
)
from .variables import InputVariables, resolve_variables
from .vault import VaultSession
from . import terraform

logger = logging.getLogger(__name__)

ENGINES = ("native", "terraform")

# Receives the rendered plan, returns False to cancel the run
ConfirmCallback = Callable[[str], bool]


@dataclass
class RunOptions:
    """Inputs of one plan/apply/destroy invocation."""
    workspace: str = "default"
    cli_vars: Sequence[str] = ()
    var_files: Sequence[Path] = ()
    extra_tags: Dict[str, str] = field(default_factory=dict)
    engine: str = "native"
    reuse_token: bool = True
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    environ: Optional[Mapping[str, str]] = None


@dataclass
class RunResult:
    """Outcome of a run."""
    run_id: str
    workspace: str
    status: str  # "planned", "applied", "destroyed", "cancelled"
    engine: str = "native"
    plan: Optional[Plan] = None
    summary: Dict[str, int] = field(default_factory=dict)
    plan_text: str = ""
    outputs: Optional[RunOutputs] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workspace": self.workspace,
            "status": self.status,
            "engine": self.engine,
            "plan": self.plan.to_dict() if self.plan else self.summary,
            "outputs": self.outputs.as_dict() if self.outputs else None,
        }


@dataclass
class _Context:
    run_id: str
    options: RunOptions
    variables: InputVariables
    compute_config: ComputeProviderConfig
    secret_config: SecretStoreConfig
    secret: Optional[SecretDocument] = None
    desired: Optional[InstanceSpec] = None

    @property
    def workspace(self) -> str:
        return self.options.workspace

    @property
    def redact(self) -> List[str]:
        values = self.variables.sensitive_values()
        if self.secret is not None:
            values.extend(self.secret.data.values())
        return values

    def emit(self, event_type: str, data: Dict[str, Any]) -> None:
        emit_event(self.workspace, event_type, data, run_id=self.run_id, redact=self.redact)


def _resolve(options: RunOptions, run_id: str) -> _Context:
    if options.engine not in ENGINES:
        raise ConfigurationError(f"Unknown engine: {options.engine}", context=f"choose one of {', '.join(ENGINES)}")

    variables = resolve_variables(options.cli_vars, options.var_files, options.environ)
    compute_config, secret_config = provider_configs(
        variables, reuse_token=options.reuse_token, timeout=options.http_timeout
    )
    ctx = _Context(run_id, options, variables, compute_config, secret_config)
    ctx.emit(EventTypes.VARS_RESOLVED, variables.redacted())
    return ctx


def _lookup_and_declare(ctx: _Context, http=None) -> None:
    with VaultSession(ctx.secret_config, http=http) as session:
        session.login()
        ctx.emit(EventTypes.VAULT_LOGIN, {"address": ctx.secret_config.address, "method": "approle"})
        ctx.secret = session.read_kv2(ctx.variables.vault_kv_mount, ctx.variables.vault_secret_name)

    ctx.emit(EventTypes.SECRET_READ, {
        "path": ctx.secret.path,
        "version": ctx.secret.version,
        "keys": sorted(ctx.secret.data),
    })
    ctx.desired = declare_instance(ctx.variables, ctx.secret, ctx.workspace, ctx.options.extra_tags)


def _refresh(compute: ComputeProvider, state: RecordedState) -> Optional[ObservedInstance]:
    """Re-read the recorded instance and update state with what EC2 reports."""
    if state.instance is None:
        return None

    observed = compute.describe_instance(state.instance.instance_id)
    if observed is None:
        logger.warning("Recorded instance %s no longer exists", state.instance.instance_id)
        state.instance = None
        state.outputs = None
        return None

    if not is_managed_instance(observed.tags):
        logger.warning("Instance %s lost its ManagedBy tag; apply will restore it", observed.instance_id)

    state.instance = RecordedInstance(observed.instance_id, observed.as_spec())
    return observed


def _forget_instance(workspace: str, state: RecordedState) -> None:
    """Drop the recorded instance and its outputs once EC2 no longer has it."""
    state.instance = None
    state.outputs = None
    write_state(workspace, state)
    remove_outputs_json(workspace)


def _check_region(state: RecordedState, region: str) -> None:
    if state.instance is not None and state.region and state.region != region:
        raise ConfigurationError(
            f"Recorded instance {state.instance.instance_id} lives in {state.region}, not {region}",
            context="destroy the workspace before changing aws_region",
        )


def _record(ctx: _Context, state: RecordedState, instance_id: Optional[str], spec: Optional[InstanceSpec]) -> None:
    state.region = ctx.compute_config.region
    state.instance = RecordedInstance(instance_id, spec) if instance_id else None
    write_state(ctx.workspace, state)


def _create(ctx: _Context, compute: ComputeProvider, state: RecordedState) -> str:
    try:
        instance_id = compute.create_instance(ctx.desired)
    except ProviderError as e:
        if e.instance_id:
            # Launched but never reached running: record what EC2 committed
            _record(ctx, state, e.instance_id, ctx.desired)
        raise
    _record(ctx, state, instance_id, ctx.desired)
    return instance_id


def _execute(ctx: _Context, compute: ComputeProvider, state: RecordedState, plan: Plan) -> str:
    """Carry out a plan, recording state after every committed call."""
    if plan.action is ActionKind.CREATE:
        instance_id = _create(ctx, compute, state)
        ctx.emit(EventTypes.INSTANCE_CREATED, {"instance_id": instance_id})
        return instance_id

    old_id = plan.observed.instance_id

    if plan.action is ActionKind.REPLACE:
        compute.terminate_instance(old_id)
        _forget_instance(ctx.workspace, state)
        instance_id = _create(ctx, compute, state)
        ctx.emit(EventTypes.INSTANCE_REPLACED, {"old_instance_id": old_id, "instance_id": instance_id})
        return instance_id

    if plan.action is ActionKind.UPDATE:
        current = state.instance.spec
        if plan.type_changed:
            compute.update_instance_type(old_id, ctx.desired.instance_type)
            current = InstanceSpec(current.ami, ctx.desired.instance_type, dict(current.tags))
            _record(ctx, state, old_id, current)
        if plan.tags_to_set or plan.tags_to_remove:
            compute.update_tags(old_id, plan.tags_to_set, plan.tags_to_remove)
            _record(ctx, state, old_id, ctx.desired)
        ctx.emit(EventTypes.INSTANCE_UPDATED, {
            "instance_id": old_id,
            "changes": [c.name for c in plan.changes],
        })
        return old_id

    return old_id


def _fail(workspace: str, run_id: str, error: VaultEc2Error, ctx: Optional[_Context] = None) -> None:
    emit_event(workspace, EventTypes.ERROR, {
        "category": error.category,
        "reason": error.message,
        "hint": error.context,
    }, run_id=run_id, redact=ctx.redact if ctx else ())


def _confirmed(confirm: Optional[ConfirmCallback], text: str) -> bool:
    return confirm is None or confirm(text)


def plan(options: RunOptions, ec2_client=None, http=None) -> RunResult:
    """
    Compute the changes an apply would make, without changing anything.

    Args:
        options: Run options
        ec2_client: Optional boto3 EC2 client
        http: Optional requests session used for Vault

    Returns:
        RunResult with status "planned"
    """
    run_id = new_run_id()
    workspace = options.workspace
    create_workspace_dir(workspace)

    ctx = None
    with state_lock(workspace):
        emit_event(workspace, EventTypes.RUN_START, {"command": "plan", "engine": options.engine}, run_id=run_id)
        try:
            ctx = _resolve(options, run_id)

            if options.engine == "terraform":
                terraform.prepare(workspace, ctx.variables, options.extra_tags, options.reuse_token)
                terraform.tf_init(workspace, run_id)
                result = terraform.tf_plan(workspace, run_id, ctx.redact)
                summary = {k: result[k] for k in ("add", "change", "destroy")}
                return RunResult(run_id, workspace, "planned", engine="terraform",
                                 summary=summary, plan_text=result["output"])

            _lookup_and_declare(ctx, http)
            state = read_state(workspace)
            _check_region(state, ctx.compute_config.region)
            compute = ComputeProvider(ctx.compute_config, client=ec2_client)
            observed = _refresh(compute, state)
            result_plan = plan_instance(ctx.desired, observed)
            ctx.emit(EventTypes.PLAN, result_plan.to_dict())
            return RunResult(run_id, workspace, "planned", plan=result_plan,
                             summary=result_plan.summary(), plan_text=result_plan.render())
        except VaultEc2Error as e:
            _fail(workspace, run_id, e, ctx)
            raise


def apply(options: RunOptions, confirm: Optional[ConfirmCallback] = None, ec2_client=None, http=None) -> RunResult:
    """
    Converge the instance on the declaration.

    Re-applying unchanged inputs against applied state makes no EC2 calls
    beyond the refresh.

    Args:
        options: Run options
        confirm: Called with the rendered plan when there are changes
        ec2_client: Optional boto3 EC2 client
        http: Optional requests session used for Vault

    Returns:
        RunResult with status "applied" or "cancelled"
    """
    run_id = new_run_id()
    workspace = options.workspace
    create_workspace_dir(workspace)

    ctx = None
    with state_lock(workspace):
        emit_event(workspace, EventTypes.RUN_START, {"command": "apply", "engine": options.engine}, run_id=run_id)
        try:
            ctx = _resolve(options, run_id)

            if options.engine == "terraform":
                return _terraform_apply(ctx, confirm)

            _lookup_and_declare(ctx, http)
            state = read_state(workspace)
            _check_region(state, ctx.compute_config.region)
            compute = ComputeProvider(ctx.compute_config, client=ec2_client)
            before = state.to_dict()
            observed = _refresh(compute, state)
            if observed is None and before["instance"] is not None:
                _forget_instance(workspace, state)
            result_plan = plan_instance(ctx.desired, observed)
            ctx.emit(EventTypes.PLAN, result_plan.to_dict())

            if result_plan.has_changes and not _confirmed(confirm, result_plan.render()):
                return RunResult(run_id, workspace, "cancelled", plan=result_plan, summary=result_plan.summary())

            ctx.emit(EventTypes.APPLY_START, {"action": result_plan.action.value})
            instance_id = _execute(ctx, compute, state, result_plan)

            outputs = bind_outputs(instance_id, ctx.secret.get(SECRET_KEY))
            state.outputs = outputs
            state.region = ctx.compute_config.region
            if state.to_dict() != before:
                write_state(workspace, state)
            write_outputs_json(workspace, outputs)

            ctx.emit(EventTypes.APPLY_DONE, {"instance_id": instance_id, **result_plan.summary()})
            return RunResult(run_id, workspace, "applied", plan=result_plan,
                             summary=result_plan.summary(), outputs=outputs)
        except VaultEc2Error as e:
            _fail(workspace, run_id, e, ctx)
            raise


def _terraform_apply(ctx: _Context, confirm: Optional[ConfirmCallback]) -> RunResult:
    workspace = ctx.workspace
    terraform.prepare(workspace, ctx.variables, ctx.options.extra_tags, ctx.options.reuse_token)
    terraform.tf_init(workspace, ctx.run_id)
    result = terraform.tf_plan(workspace, ctx.run_id, ctx.redact)
    summary = {k: result[k] for k in ("add", "change", "destroy")}

    if any(summary.values()) and not _confirmed(confirm, result["output"]):
        return RunResult(ctx.run_id, workspace, "cancelled", engine="terraform", summary=summary)

    ctx.emit(EventTypes.APPLY_START, summary)
    terraform.tf_apply(workspace, ctx.run_id, ctx.redact)

    values = terraform.get_terraform_outputs(workspace)
    outputs = bind_outputs(values["ec2_instance_id"], values["vault_secret"])
    write_outputs_json(workspace, outputs)

    ctx.emit(EventTypes.APPLY_DONE, {"instance_id": outputs.ec2_instance_id, **summary})
    return RunResult(ctx.run_id, workspace, "applied", engine="terraform", summary=summary, outputs=outputs)


def destroy(options: RunOptions, confirm: Optional[ConfirmCallback] = None, ec2_client=None) -> RunResult:
    """
    Terminate the recorded instance and clear state.

    The native engine does not contact Vault: only the recorded instance
    is needed.

    Args:
        options: Run options
        confirm: Called with the rendered plan when there is something to destroy
        ec2_client: Optional boto3 EC2 client

    Returns:
        RunResult with status "destroyed" or "cancelled"
    """
    run_id = new_run_id()
    workspace = options.workspace
    create_workspace_dir(workspace)

    ctx = None
    with state_lock(workspace):
        emit_event(workspace, EventTypes.RUN_START, {"command": "destroy", "engine": options.engine}, run_id=run_id)
        try:
            ctx = _resolve(options, run_id)

            if options.engine == "terraform":
                if not _confirmed(confirm, "terraform destroy will remove every resource in the workspace"):
                    return RunResult(run_id, workspace, "cancelled", engine="terraform")
                ctx.emit(EventTypes.DESTROY_START, {})
                terraform.prepare(workspace, ctx.variables, options.extra_tags, options.reuse_token)
                terraform.tf_init(workspace, run_id)
                terraform.tf_destroy(workspace, run_id, ctx.redact)
                remove_outputs_json(workspace)
                ctx.emit(EventTypes.DESTROY_DONE, {})
                return RunResult(run_id, workspace, "destroyed", engine="terraform")

            state = read_state(workspace)
            region = state.region or ctx.compute_config.region
            compute = ComputeProvider(ComputeProviderConfig(region=region), client=ec2_client)
            observed = _refresh(compute, state)
            result_plan = plan_destroy(observed)

            if result_plan.has_changes and not _confirmed(confirm, result_plan.render()):
                return RunResult(run_id, workspace, "cancelled", plan=result_plan, summary=result_plan.summary())

            ctx.emit(EventTypes.DESTROY_START, result_plan.to_dict())
            if result_plan.action is ActionKind.DELETE:
                compute.terminate_instance(observed.instance_id)

            state.instance = None
            state.outputs = None
            write_state(workspace, state)
            remove_outputs_json(workspace)

            ctx.emit(EventTypes.DESTROY_DONE, result_plan.summary())
            return RunResult(run_id, workspace, "destroyed", plan=result_plan, summary=result_plan.summary())
        except VaultEc2Error as e:
            _fail(workspace, run_id, e, ctx)
            raise


def outputs(workspace: str) -> Optional[RunOutputs]:
    """Outputs recorded by the last successful apply, if any."""
    return read_outputs_json(workspace)
