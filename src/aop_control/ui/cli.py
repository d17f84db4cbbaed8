"""Command-line interface router for aop-control."""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from aop_control.config import dump_effective_config, load_config
from aop_control.control_plane.control_scope import SCOPE_TYPES, ControlScopeResult
from aop_control.control_plane.task_graph import TaskGraph
from aop_control.domain.models import (
    BudgetDecision,
    BudgetRequest,
    ControlAction,
    DiffProposal,
    Mutation,
    MutationStatus,
    StepStatus,
    Task,
    TaskStatus,
)
from aop_control.observability.activity import ActivityPage
from aop_control.observability.logging import configure_logging
from aop_control.service import ControlPlane
from aop_control.ui.render import CLIRenderer, create_renderer
from aop_control.verification_plane.pipeline import PipelineRunResult


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 2

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for every supported command."""

    parser = argparse.ArgumentParser(
        prog="aop",
        description=(
            "aop-control - control plane for multi-tier agent coding runs.\n\n"
            "Common workflows:\n"
            "  aop create-task --tier 1 --domain core --objective '...' --budget 5000\n"
            "  aop control-scope ROOT pause --scope tier --tier 3\n"
            "  aop run-pipeline MUTATION --target-project ./repo --approve\n"
            "  aop audit-log --since-id 42\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to the aop TOML config (default: ./aop.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--state-db", default=None, help="Override paths.state_db for this invocation."
    )
    common.add_argument(
        "--json", dest="json_output", action="store_true", help="Emit JSON instead of text."
    )
    common.add_argument("--verbose", "-v", action="store_true", help="Show detailed output.")
    common.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # tasks ---------------------------------------------------------------
    create = subparsers.add_parser("create-task", parents=[common], help="Create a task")
    create.add_argument("--tier", type=int, required=True, choices=(1, 2, 3))
    create.add_argument("--domain", required=True)
    create.add_argument("--objective", required=True)
    create.add_argument("--budget", dest="token_budget", type=int, required=True)
    create.add_argument("--parent", dest="parent_id", default=None)
    create.add_argument("--risk", dest="risk_factor", type=float, default=0.0)
    create.add_argument("--agent-uid", default=None)
    create.add_argument("--target-file", dest="target_files", action="append", default=[])
    create.set_defaults(handler=_cmd_create_task)

    show = subparsers.add_parser("show-task", parents=[common], help="Show one task")
    show.add_argument("task_id")
    show.set_defaults(handler=_cmd_show_task)

    tree = subparsers.add_parser("task-tree", parents=[common], help="Show a task tree")
    tree.add_argument("root_task_id")
    tree.set_defaults(handler=_cmd_task_tree)

    status = subparsers.add_parser(
        "update-task-status", parents=[common], help="Record an execution outcome"
    )
    status.add_argument("task_id")
    status.add_argument("status", choices=[item.value for item in TaskStatus])
    status.add_argument("--error", dest="error_message", default=None)
    status.add_argument("--compliance", dest="compliance_score", type=int, default=None)
    status.set_defaults(handler=_cmd_update_task_status)

    # control -------------------------------------------------------------
    actions = [item.value for item in ControlAction]
    control_options = argparse.ArgumentParser(add_help=False)
    control_options.add_argument("--reason", default=None)
    control_options.add_argument("--target-project", default=None)
    control_options.add_argument(
        "--no-reexecute",
        dest="reexecute",
        action="store_false",
        help="Restart tasks without re-executing domain leaders.",
    )
    control_options.add_argument("--ci-command", default=None)

    control = subparsers.add_parser(
        "control-task",
        parents=[common, control_options],
        help="Pause, resume, stop or restart one task (and its subtree)",
    )
    control.add_argument("task_id")
    control.add_argument("action", choices=actions)
    control.add_argument(
        "--no-descendants", dest="include_descendants", action="store_false"
    )
    control.set_defaults(handler=_cmd_control_task)

    scope = subparsers.add_parser(
        "control-scope",
        parents=[common, control_options],
        help="Apply a control action to a tree, a tier, or an agent subtree",
    )
    scope.add_argument("root_task_id")
    scope.add_argument("action", choices=actions)
    scope.add_argument("--scope", dest="scope_type", choices=SCOPE_TYPES, default="tree")
    scope.add_argument("--tier", type=int, default=None)
    scope.add_argument("--agent", dest="agent_task_id", default=None)
    scope.set_defaults(handler=_cmd_control_scope)

    # budgets -------------------------------------------------------------
    request = subparsers.add_parser(
        "budget-request", parents=[common], help="Request a token budget increase"
    )
    request.add_argument("task_id")
    request.add_argument("--increment", dest="requested_increment", type=int, required=True)
    request.add_argument("--reason", required=True)
    request.add_argument("--requested-by", default="operator")
    request.add_argument("--stage-cost", dest="estimated_stage_cost", type=int, default=0)
    request.add_argument(
        "--no-auto-approve", dest="auto_approve", action="store_false", default=None
    )
    request.set_defaults(handler=_cmd_budget_request)

    resolve = subparsers.add_parser(
        "budget-resolve", parents=[common], help="Approve or reject a budget request"
    )
    resolve.add_argument("request_id")
    resolve.add_argument("decision", choices=[item.value for item in BudgetDecision])
    resolve.add_argument("--increment", dest="approved_increment", type=int, default=None)
    resolve.add_argument("--resume", dest="resume_task", action="store_true")
    resolve.add_argument("--decided-by", default="operator")
    resolve.add_argument("--reason", default=None)
    resolve.set_defaults(handler=_cmd_budget_resolve)

    listing = subparsers.add_parser(
        "budget-list", parents=[common], help="List budget requests for a task"
    )
    listing.add_argument("task_id")
    listing.add_argument("--descendants", dest="include_descendants", action="store_true")
    listing.add_argument("--status", default=None)
    listing.add_argument("--limit", type=int, default=50)
    listing.set_defaults(handler=_cmd_budget_list)

    ensure = subparsers.add_parser(
        "budget-ensure",
        parents=[common],
        help="Request more budget if a task cannot afford its next stage",
    )
    ensure.add_argument("task_id")
    ensure.add_argument("--tokens", dest="planned_tokens", type=int, required=True)
    ensure.add_argument("--stage", default="execution")
    ensure.add_argument("--pause-on-exhaustion", action="store_true")
    ensure.set_defaults(handler=_cmd_budget_ensure)

    split = subparsers.add_parser(
        "budget-split", parents=[common], help="Split a global token budget"
    )
    split.add_argument("global_budget", type=int)
    split.add_argument(
        "--assignment",
        dest="assignments",
        action="append",
        type=_assignment,
        default=[],
        metavar="COMPLEXITY:RISK",
        help="One per task assignment; repeat to share the distributed budget.",
    )
    split.set_defaults(handler=_cmd_budget_split)

    # mutations -----------------------------------------------------------
    propose = subparsers.add_parser(
        "propose-mutation", parents=[common], help="Record a proposed diff for a task"
    )
    propose.add_argument("task_id")
    propose.add_argument("--file", dest="file_path", required=True)
    propose.add_argument("--diff", dest="diff_path", required=True, help="Unified diff file.")
    propose.add_argument("--intent", required=True)
    propose.add_argument("--agent-uid", default="operator")
    propose.add_argument("--confidence", type=float, default=0.5)
    propose.set_defaults(handler=_cmd_propose_mutation)

    pipeline = subparsers.add_parser(
        "run-pipeline", parents=[common], help="Run a mutation through the pipeline"
    )
    pipeline.add_argument("mutation_id")
    pipeline.add_argument("--target-project", default=None)
    pipeline.add_argument("--approve", dest="tier1_approved", action="store_true")
    pipeline.add_argument("--ci-command", default=None)
    pipeline.add_argument("--keep-shadow", action="store_true", default=None)
    pipeline.set_defaults(handler=_cmd_run_pipeline)

    set_status = subparsers.add_parser(
        "set-mutation-status", parents=[common], help="Move a mutation to a new status"
    )
    set_status.add_argument("mutation_id")
    set_status.add_argument("status", choices=[item.value for item in MutationStatus])
    set_status.add_argument("--reason", dest="rejection_reason", default=None)
    set_status.set_defaults(handler=_cmd_set_mutation_status)

    revise = subparsers.add_parser(
        "revise-mutation", parents=[common], help="Request a revised proposal for a mutation"
    )
    revise.add_argument("mutation_id")
    revise.add_argument("--note", required=True)
    revise.set_defaults(handler=_cmd_revise_mutation)

    mutations = subparsers.add_parser(
        "list-mutations", parents=[common], help="List mutations of a task"
    )
    mutations.add_argument("task_id")
    mutations.add_argument("--descendants", dest="include_descendants", action="store_true")
    mutations.add_argument("--status", dest="statuses", action="append", default=None)
    mutations.add_argument("--limit", type=int, default=100)
    mutations.set_defaults(handler=_cmd_list_mutations)

    # conflicts -----------------------------------------------------------
    accept = subparsers.add_parser(
        "accept-proposal",
        parents=[common],
        help="Resolve a conflict by applying one mutation with Tier 1 approval",
    )
    accept.add_argument("mutation_id")
    accept.add_argument("--target-project", default=None)
    accept.add_argument("--ci-command", default=None)
    accept.set_defaults(handler=_cmd_accept_proposal)

    reject_both = subparsers.add_parser(
        "reject-proposals", parents=[common], help="Reject both conflicting mutations"
    )
    reject_both.add_argument("mutation_a")
    reject_both.add_argument("mutation_b")
    reject_both.add_argument("--reason", required=True)
    reject_both.set_defaults(handler=_cmd_reject_proposals)

    merge = subparsers.add_parser(
        "manual-merge", parents=[common], help="Select a mutation for manual editing"
    )
    merge.add_argument("mutation_id")
    merge.set_defaults(handler=_cmd_manual_merge)

    # activity ------------------------------------------------------------
    audit = subparsers.add_parser(
        "audit-log", parents=[common], help="Poll the audit log after an entry id"
    )
    audit.add_argument("--since-id", type=int, default=0)
    audit.add_argument("--limit", type=int, default=100)
    audit.set_defaults(handler=_cmd_audit_log)

    activity = subparsers.add_parser(
        "task-activity", parents=[common], help="Poll audit entries for a task subtree"
    )
    activity.add_argument("task_id")
    activity.add_argument("--since-id", type=int, default=0)
    activity.add_argument("--limit", type=int, default=100)
    activity.add_argument("--only-task", dest="include_descendants", action="store_false")
    activity.set_defaults(handler=_cmd_task_activity)

    # content access ------------------------------------------------------
    read = subparsers.add_parser("read-file", parents=[common], help="Read a project file")
    read.add_argument("path")
    read.add_argument("--target-project", default=None)
    read.set_defaults(handler=_cmd_read_file)

    list_dir = subparsers.add_parser("list-dir", parents=[common], help="List a directory")
    list_dir.add_argument("path", nargs="?", default=".")
    list_dir.add_argument("--target-project", default=None)
    list_dir.set_defaults(handler=_cmd_list_dir)

    search = subparsers.add_parser(
        "search-files", parents=[common], help="Search project paths and contents"
    )
    search.add_argument("pattern")
    search.add_argument("--limit", type=int, default=40)
    search.add_argument("--target-project", default=None)
    search.set_defaults(handler=_cmd_search_files)

    # config --------------------------------------------------------------
    config = subparsers.add_parser(
        "config", parents=[common], help="Print the effective (redacted) config"
    )
    config.set_defaults(handler=_cmd_config)

    return parser


def _assignment(raw: str) -> tuple[float, float]:
    complexity, separator, risk = raw.partition(":")
    try:
        if not separator:
            raise ValueError(raw)
        return float(complexity), float(risk)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"expected COMPLEXITY:RISK, got {raw!r}"
        ) from exc


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_create_task(args: argparse.Namespace) -> int:
    plane = _control_plane(args)
    task = plane.create_task(
        tier=args.tier,
        domain=args.domain,
        objective=args.objective,
        token_budget=args.token_budget,
        parent_id=args.parent_id,
        risk_factor=args.risk_factor,
        agent_uid=args.agent_uid,
        target_files=args.target_files,
    )
    _render_task(_get_renderer(args), task, as_json=args.json_output)
    return 0


def _cmd_show_task(args: argparse.Namespace) -> int:
    task = _control_plane(args).get_task(args.task_id)
    _render_task(_get_renderer(args), task, as_json=args.json_output)
    return 0


def _cmd_task_tree(args: argparse.Namespace) -> int:
    graph = _control_plane(args).task_tree(args.root_task_id)
    renderer = _get_renderer(args)
    if args.json_output:
        renderer.json({"root_task_id": graph.root.id, "tasks": [t.to_dict() for t in graph]})
        return 0
    renderer.table(
        ("task", "tier", "status", "budget", "usage", "domain"),
        [
            (
                f"{'  ' * depth}{task.id}",
                task.tier,
                task.status.value,
                task.token_budget,
                task.token_usage,
                task.domain,
            )
            for task, depth in _with_depth(graph)
        ],
        title=f"Task tree {graph.root.id}",
    )
    return 0


def _cmd_update_task_status(args: argparse.Namespace) -> int:
    task = _control_plane(args).update_task_status(
        args.task_id,
        args.status,
        error_message=args.error_message,
        compliance_score=args.compliance_score,
    )
    _render_task(_get_renderer(args), task, as_json=args.json_output)
    return 0


def _cmd_control_task(args: argparse.Namespace) -> int:
    plane = _control_plane(args)
    result = asyncio.run(
        plane.control_task(
            args.task_id,
            args.action,
            include_descendants=args.include_descendants,
            reason=args.reason,
            target_project=args.target_project,
            reexecute=args.reexecute,
            ci_command=args.ci_command,
        )
    )
    _render_control(_get_renderer(args), result, as_json=args.json_output)
    return 0


def _cmd_control_scope(args: argparse.Namespace) -> int:
    plane = _control_plane(args)
    result = asyncio.run(
        plane.control_execution_scope(
            args.root_task_id,
            args.action,
            args.scope_type,
            tier=args.tier,
            agent_task_id=args.agent_task_id,
            reason=args.reason,
            target_project=args.target_project,
            reexecute=args.reexecute,
            ci_command=args.ci_command,
        )
    )
    _render_control(_get_renderer(args), result, as_json=args.json_output)
    return 0


def _cmd_budget_request(args: argparse.Namespace) -> int:
    request = _control_plane(args).request_task_budget_increase(
        args.task_id,
        requested_by=args.requested_by,
        reason=args.reason,
        requested_increment=args.requested_increment,
        auto_approve=args.auto_approve,
        estimated_stage_cost=args.estimated_stage_cost,
    )
    _render_budget_requests(_get_renderer(args), [request], as_json=args.json_output)
    return 0


def _cmd_budget_resolve(args: argparse.Namespace) -> int:
    request = _control_plane(args).resolve_task_budget_request(
        args.request_id,
        args.decision,
        approved_increment=args.approved_increment,
        resume_task=args.resume_task,
        decided_by=args.decided_by,
        reason=args.reason,
    )
    _render_budget_requests(_get_renderer(args), [request], as_json=args.json_output)
    return 0


def _cmd_budget_list(args: argparse.Namespace) -> int:
    requests = _control_plane(args).list_task_budget_requests(
        args.task_id,
        include_descendants=args.include_descendants,
        status=args.status,
        limit=args.limit,
    )
    _render_budget_requests(_get_renderer(args), requests, as_json=args.json_output)
    return 0


def _cmd_budget_ensure(args: argparse.Namespace) -> int:
    request = _control_plane(args).ensure_task_budget_headroom(
        args.task_id,
        args.planned_tokens,
        stage=args.stage,
        pause_on_exhaustion=args.pause_on_exhaustion,
    )
    _render_budget_requests(
        _get_renderer(args), [] if request is None else [request], as_json=args.json_output
    )
    return 0


def _cmd_budget_split(args: argparse.Namespace) -> int:
    split = _control_plane(args).split_budget(args.global_budget, args.assignments)
    renderer = _get_renderer(args)
    if args.json_output:
        renderer.json(split.to_dict())
        return 0
    for key, value in split.to_dict().items():
        renderer.kv(key, value)
    return 0


def _cmd_propose_mutation(args: argparse.Namespace) -> int:
    diff_path = Path(args.diff_path).expanduser()
    try:
        diff_content = diff_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"cannot read diff file {diff_path}: {exc}", exit_code=3) from exc
    mutation = _control_plane(args).propose_mutation(
        args.task_id,
        DiffProposal(
            agent_uid=args.agent_uid,
            file_path=args.file_path,
            diff_content=diff_content,
            intent_description=args.intent,
            confidence=args.confidence,
        ),
    )
    _render_mutations(_get_renderer(args), [mutation], as_json=args.json_output)
    return 0


def _cmd_run_pipeline(args: argparse.Namespace) -> int:
    plane = _control_plane(args)
    result = asyncio.run(
        plane.run_mutation_pipeline(
            args.mutation_id,
            target_project=args.target_project,
            tier1_approved=args.tier1_approved,
            ci_command=args.ci_command,
            keep_shadow=args.keep_shadow,
        )
    )
    _render_pipeline(_get_renderer(args), result, as_json=args.json_output)
    return 0


def _cmd_set_mutation_status(args: argparse.Namespace) -> int:
    mutation = _control_plane(args).set_mutation_status(
        args.mutation_id, args.status, rejection_reason=args.rejection_reason
    )
    _render_mutations(_get_renderer(args), [mutation], as_json=args.json_output)
    return 0


def _cmd_revise_mutation(args: argparse.Namespace) -> int:
    plane = _control_plane(args)
    result = asyncio.run(plane.request_mutation_revision(args.mutation_id, args.note))
    renderer = _get_renderer(args)
    if args.json_output:
        renderer.json(result.to_dict())
        return 0
    renderer.kv("revised task", result.revised_task.id)
    renderer.kv("new mutation", result.revised_mutation.id)
    return 0


def _cmd_list_mutations(args: argparse.Namespace) -> int:
    mutations = _control_plane(args).list_task_mutations(
        args.task_id,
        include_descendants=args.include_descendants,
        statuses=args.statuses,
        limit=args.limit,
    )
    _render_mutations(_get_renderer(args), mutations, as_json=args.json_output)
    return 0


def _cmd_accept_proposal(args: argparse.Namespace) -> int:
    plane = _control_plane(args)
    result = asyncio.run(
        plane.accept_conflict_proposal(
            args.mutation_id, target_project=args.target_project, ci_command=args.ci_command
        )
    )
    _render_pipeline(_get_renderer(args), result, as_json=args.json_output)
    return 0


def _cmd_reject_proposals(args: argparse.Namespace) -> int:
    rejected = _control_plane(args).reject_conflicting_proposals(
        args.mutation_a, args.mutation_b, args.reason
    )
    _render_mutations(_get_renderer(args), list(rejected), as_json=args.json_output)
    return 0


def _cmd_manual_merge(args: argparse.Namespace) -> int:
    mutation = _control_plane(args).manual_merge(args.mutation_id)
    renderer = _get_renderer(args)
    if args.json_output:
        renderer.json(mutation.to_dict())
        return 0
    renderer.heading(f"Mutation {mutation.id} selected for manual merge")
    renderer.kv("file", mutation.file_path)
    renderer.kv("status", mutation.status.value)
    if renderer.verbose:
        renderer.text(mutation.diff_content)
    return 0


def _cmd_audit_log(args: argparse.Namespace) -> int:
    page = _control_plane(args).list_audit_log(args.since_id, limit=args.limit)
    _render_activity(_get_renderer(args), page, as_json=args.json_output)
    return 0


def _cmd_task_activity(args: argparse.Namespace) -> int:
    page = _control_plane(args).list_task_activity(
        args.task_id,
        include_descendants=args.include_descendants,
        since_id=args.since_id,
        limit=args.limit,
    )
    _render_activity(_get_renderer(args), page, as_json=args.json_output)
    return 0


def _cmd_read_file(args: argparse.Namespace) -> int:
    content = _control_plane(args).read_file(args.path, target_project=args.target_project)
    renderer = _get_renderer(args)
    if args.json_output:
        renderer.json(content.to_dict())
        return 0
    for warning in content.warnings:
        renderer.warning(warning)
    sys.stdout.write(content.content)
    if content.content and not content.content.endswith("\n"):
        sys.stdout.write("\n")
    return 0


def _cmd_list_dir(args: argparse.Namespace) -> int:
    listing = _control_plane(args).list_dir(args.path, target_project=args.target_project)
    renderer = _get_renderer(args)
    if args.json_output:
        renderer.json(listing.to_dict())
        return 0
    renderer.heading(listing.cwd)
    renderer.table(
        ("name", "type", "size"),
        [
            (f"{entry.name}/" if entry.is_dir else entry.name, "dir" if entry.is_dir else "file",
             entry.size)
            for entry in listing.entries
        ],
    )
    return 0


def _cmd_search_files(args: argparse.Namespace) -> int:
    result = _control_plane(args).search_files(
        args.pattern, limit=args.limit, target_project=args.target_project
    )
    renderer = _get_renderer(args)
    if args.json_output:
        renderer.json(result.to_dict())
        return 0
    if not result.matches:
        renderer.text(f"no matches for {result.pattern!r}")
        return 0
    for match in result.matches:
        if match.line is None:
            renderer.text(match.path)
        else:
            renderer.text(f"{match.path}:{match.line}: {match.preview}")
    for warning in result.warnings:
        renderer.warning(warning)
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    print(dump_effective_config(_load_effective_config(args)))
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(
        no_color=bool(getattr(args, "no_color", False)),
        verbose=bool(getattr(args, "verbose", False)),
    )


def _render_task(renderer: CLIRenderer, task: Task, *, as_json: bool) -> None:
    if as_json:
        renderer.json(task.to_dict())
        return
    renderer.heading(f"Task {task.id}")
    renderer.kv("tier", task.tier)
    renderer.kv("domain", task.domain)
    renderer.kv("status", task.status.value)
    renderer.kv("budget", f"{task.token_usage}/{task.token_budget}")
    renderer.kv("compliance", task.compliance_score)
    renderer.kv("retries", task.retry_count)
    if task.parent_id is not None:
        renderer.kv("parent", task.parent_id)
    if task.error_message:
        renderer.kv("error", task.error_message)
    if renderer.verbose:
        renderer.kv("objective", task.objective)


def _render_control(renderer: CLIRenderer, result: ControlScopeResult, *, as_json: bool) -> None:
    if as_json:
        renderer.json(result.to_dict())
        return
    renderer.heading(
        f"{result.action.value} on {result.root_task_id}: {result.updated_count} updated, "
        f"{len(result.skipped)} skipped"
    )
    renderer.table(
        ("task", "tier", "from", "to"),
        [
            (item.task_id, item.tier, item.from_status.value, item.to_status.value)
            for item in result.affected
        ],
    )
    if result.cancelled_executions:
        renderer.kv("cancelled executions", result.cancelled_executions)
    if result.restart_apply is not None:
        summary = result.restart_apply
        renderer.kv("applied mutations", summary.applied_mutations)
        renderer.kv("rejected mutations", summary.rejected_mutations)
    if result.issue:
        renderer.warning(result.issue)


def _render_budget_requests(
    renderer: CLIRenderer, requests: Sequence[BudgetRequest], *, as_json: bool
) -> None:
    if as_json:
        renderer.json([request.to_dict() for request in requests])
        return
    if not requests:
        renderer.text("no budget requests")
        return
    renderer.table(
        ("request", "task", "status", "requested", "approved", "note"),
        [
            (
                request.id,
                request.task_id,
                request.status.value,
                request.requested_increment,
                request.approved_increment,
                request.resolution_note,
            )
            for request in requests
        ],
    )


def _render_mutations(
    renderer: CLIRenderer, mutations: Sequence[Mutation], *, as_json: bool
) -> None:
    if as_json:
        renderer.json([mutation.to_dict() for mutation in mutations])
        return
    if not mutations:
        renderer.text("no mutations")
        return
    renderer.table(
        ("mutation", "task", "file", "status", "confidence"),
        [
            (m.id, m.task_id, m.file_path, m.status.value, f"{m.confidence:.2f}")
            for m in mutations
        ],
    )


def _render_pipeline(renderer: CLIRenderer, result: PipelineRunResult, *, as_json: bool) -> None:
    if as_json:
        renderer.json(result.to_dict())
        return
    renderer.heading(f"Mutation {result.mutation.id}: {result.mutation.status.value}")
    for step in result.steps:
        line = f"{step.step}: {step.details}"
        if step.status is StepStatus.FAILED:
            renderer.fail(line)
        elif step.status is StepStatus.PASSED:
            renderer.ok(line)
        else:
            renderer.text(f"  ..  {line}")
    if result.shadow_dir is not None:
        renderer.kv("shadow", result.shadow_dir)


def _render_activity(renderer: CLIRenderer, page: ActivityPage, *, as_json: bool) -> None:
    if as_json:
        renderer.json(page.to_dict())
        return
    renderer.table(
        ("id", "timestamp", "actor", "action", "target"),
        [
            (entry.id, entry.timestamp.isoformat(), entry.actor, entry.action.value,
             entry.target_id)
            for entry in page.entries
        ],
    )
    renderer.kv("next since id", page.next_since_id)


def _with_depth(graph: TaskGraph) -> list[tuple[Task, int]]:
    depth: dict[str, int] = {graph.root.id: 0}
    ordered: list[tuple[Task, int]] = []
    for task in graph.bfs():
        level = depth.get(task.parent_id or "", -1) + 1 if task.id != graph.root.id else 0
        depth[task.id] = level
        ordered.append((task, level))
    return ordered


# ---------------------------------------------------------------------------
# Helpers - config and wiring
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    if getattr(args, "state_db", None):
        overrides["paths.state_db"] = args.state_db
    return load_config(
        getattr(args, "config_path", None),
        profile=getattr(args, "profile", None),
        cli_overrides=overrides,
    )


def _control_plane(args: argparse.Namespace) -> ControlPlane:
    config = _load_effective_config(args)
    observability = config.get("observability")
    if isinstance(observability, Mapping):
        configure_logging(
            str(observability.get("log_level", "INFO")),
            json_output=bool(observability.get("json_logs", False)),
        )
    return ControlPlane.from_config(config)


__all__ = ["CLIError", "build_parser", "run_cli"]
