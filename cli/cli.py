import argparse
import getpass
import os
import sys
from datetime import timedelta

import requests
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from engine.planner.dag_builder import PipelinePlan
from engine.scheduler.exceptions import GateAlreadyResolved, UnknownGate
from engine.scheduler.pipeline import StagePipeline
from engine.scheduler.report import PipelineReport
from engine.scheduler.types import PipelineStatus
from engine.services.run_store import RunActive, RunNotFound, RunSnapshot
from engine.services.run_submitter import RunSubmissionError, RunSubmitter

# --- Configuration ---
CONVOY_API_URL = os.environ.get("CONVOY_API_URL")
console = Console()

STATE_STYLES = {
    "SUCCEEDED": "bold green",
    "FAILED": "bold red",
    "BLOCKED": "red",
    "ABORTED": "magenta",
    "CANCELLED": "yellow",
    "AWAITING_APPROVAL": "bold yellow",
    "APPROVED": "cyan",
    "RUNNING": "cyan",
}


def print_header():
    title = r"""
  ___ ___  _ ___   _____ _  _
 / __/ _ \| ' \ \ / / _ \ || |
| (_| (_) | .` |\ V / (_) \_, |
 \___\___/|_|\_| \_/ \___//__/
   ... release fan-out coordinator ...
    """
    console.print(Panel.fit(Text(title, style="bold cyan"), border_style="blue"))


# --- Helper Functions ---

def print_error(message, details=None):
    console.print(f"[bold red]❌ Error:[/bold red] {message}")
    if details:
        console.print(Panel(str(details), title="Details", border_style="red"))


def print_success(message):
    console.print(f"[bold green]✅ Success:[/bold green] {message}")


def styled(state: str) -> str:
    style = STATE_STYLES.get(state)
    return f"[{style}]{state}[/{style}]" if style else state


def context_fields(args) -> dict:
    return {
        "version": args.version,
        "branch": args.branch,
        "environment": args.environment,
        "revision": args.revision,
    }


def render_plan(plan: PipelinePlan):
    ctx = plan.context
    console.print(f"[bold]{plan.name}[/bold] {ctx.version} "
                  f"[dim](branch {ctx.branch or '-'}, {ctx.environment})[/dim]")

    table = Table(title="Stages", show_header=True, header_style="bold magenta")
    table.add_column("Stage", style="bold white")
    table.add_column("Needs", style="dim")
    table.add_column("Gate")
    table.add_column("Task")
    table.add_column("Class", style="dim")
    table.add_column("Artifact")
    for stage in plan.stages:
        first = True
        for task in stage.tasks or ():
            table.add_row(
                stage.name if first else "",
                ", ".join(sorted(stage.dependencies)) if first else "",
                ("approval" if stage.approval else "") if first else "",
                task.name,
                task.resource_class,
                task.artifact.target if task.artifact else "",
            )
            first = False
        if first:
            table.add_row(stage.name, ", ".join(sorted(stage.dependencies)), "", "[dim]no tasks[/dim]", "", "")
    console.print(table)

    if plan.skipped_stages:
        console.print(f"[yellow]Skipped on this branch:[/yellow] {', '.join(plan.skipped_stages)}")


def render_stages(rows):
    table = Table(title="Stages", show_header=True, header_style="bold magenta")
    table.add_column("Stage", style="bold white")
    table.add_column("State")
    table.add_column("Failure", style="red")
    table.add_column("Tasks")
    for name, state, failure_kind, tasks in rows:
        ok = sum(1 for t in tasks if t.get("status") == "SUCCESS")
        table.add_row(name, styled(state), failure_kind or "", f"{ok}/{len(tasks)}" if tasks else "")
    console.print(table)


def render_report(report: PipelineReport):
    render_stages(
        (s.name, s.state, s.failure_kind, s.tasks) for s in report.stages
    )
    for key, log_text in report.failed_task_logs.items():
        console.print(Panel(log_text or "(no output)", title=f"{key} log", border_style="red"))
    if report.artifacts:
        console.print("[bold]Artifacts:[/bold] " + ", ".join(a["target"] for a in report.artifacts))
    if report.release:
        print_success(f"Release record written for {report.release['tag']} "
                      f"({len(report.release['artifacts'])} file(s))")
    if report.release_error:
        print_error("Release failed", report.release_error)
    console.print(f"Run [bold]{report.run_id}[/bold]: {styled(report.status)}")


def render_snapshot(snapshot: RunSnapshot):
    console.print(f"Run [bold]{snapshot.run_id}[/bold] ({snapshot.pipeline} {snapshot.context.version}): "
                  f"{styled(snapshot.status.value)}")
    render_stages(
        (name, rec.state.value, rec.failure_kind.value if rec.failure_kind else None, rec.tasks)
        for name, rec in snapshot.stages.items()
    )
    render_gates(snapshot.pending_gates(), snapshot.run_id)


def render_gates(gates, run_id):
    if not gates:
        return
    table = Table(title="Pending approvals", show_header=True, header_style="bold yellow")
    table.add_column("Stage", style="bold white")
    table.add_column("Requested at", style="dim")
    for gate in gates:
        table.add_row(gate.stage, gate.requested_at.isoformat(timespec="seconds"))
    console.print(table)
    console.print(f"[dim]convoy approve {run_id} <stage> | convoy decline {run_id} <stage>[/dim]")


def api_call(args, method, path, payload=None):
    """
    Talks to a running Convoy API instead of the local run store.
    """
    url = f"{args.api.rstrip('/')}/api/v1/runs{path}"
    headers = {"Authorization": f"Bearer {args.token}"}
    response = requests.request(method, url, headers=headers, json=payload, timeout=30)
    response.raise_for_status()
    return response.json()


# --- Command Handlers ---

def drive(pipeline: StagePipeline, args) -> int:
    """
    Runs a pipeline in the foreground until it finishes or waits on a gate.
    """
    try:
        while True:
            with console.status(f"[bold yellow]Running {pipeline.run_id}...", spinner="earth"):
                status = pipeline.run(detach_on_approval=True)
            if status != PipelineStatus.AWAITING_APPROVAL or not args.interactive:
                break
            for gate in pipeline.pending_approvals():
                if Confirm.ask(f"Approve stage [bold]{gate.stage}[/bold]?"):
                    pipeline.approve(gate.stage, args.actor)
                else:
                    pipeline.decline(gate.stage, args.actor, "Declined at prompt")
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, cancelling run...[/yellow]")
        pipeline.cancel("Interrupted")
        pipeline.wait()
        status = pipeline.status
    finally:
        pipeline.coordinator.shutdown()

    render_report(pipeline.report())
    if status == PipelineStatus.AWAITING_APPROVAL:
        render_gates(pipeline.pending_approvals(), pipeline.run_id)
        console.print(f"[dim]Then: convoy resume {pipeline.run_id}[/dim]")
        return 0
    return 0 if status == PipelineStatus.SUCCEEDED else 1


def handle_plan(args) -> int:
    plan = RunSubmitter().plan(args.definition, **context_fields(args))
    render_plan(plan)
    return 0


def handle_run(args) -> int:
    pipeline = RunSubmitter().submit(args.definition, **context_fields(args))
    print_success(f"Run {pipeline.run_id} submitted")
    return drive(pipeline, args)


def handle_resume(args) -> int:
    pipeline = RunSubmitter().resume(args.run_id)
    return drive(pipeline, args)


def handle_status(args) -> int:
    if args.api:
        snapshot = RunSnapshot.model_validate(api_call(args, "GET", f"/{args.run_id}"))
    else:
        snapshot = RunSubmitter().store.load(args.run_id)
    render_snapshot(snapshot)
    return 0


def handle_list(args) -> int:
    table = Table(title="Runs", show_header=True, header_style="bold magenta")
    table.add_column("Run", style="bold white")
    table.add_column("Pipeline")
    table.add_column("Version")
    table.add_column("Status")
    table.add_column("Updated", style="dim")
    for snap in RunSubmitter().store.list():
        table.add_row(snap.run_id, snap.pipeline, snap.context.version, styled(snap.status.value),
                      snap.updated_at.isoformat(timespec="seconds"))
    console.print(table)
    return 0


def handle_approvals(args) -> int:
    if args.api:
        snapshot = RunSnapshot.model_validate(api_call(args, "GET", f"/{args.run_id}"))
    else:
        snapshot = RunSubmitter().store.load(args.run_id)
    if not snapshot.pending_gates():
        console.print("No pending approvals.")
    render_gates(snapshot.pending_gates(), snapshot.run_id)
    return 0


def resolve(args, approve: bool) -> int:
    verb = "approved" if approve else "declined"
    if args.api:
        api_call(args, "POST", f"/{args.run_id}/approvals/{args.stage}",
                 {"approve": approve, "reason": getattr(args, "reason", None)})
        print_success(f"Stage '{args.stage}' {verb}")
        return 0

    submitter = RunSubmitter()
    submitter.store.resolve_gate(
        args.run_id, args.stage, actor=args.actor, approve=approve,
        reason=getattr(args, "reason", None),
    )
    print_success(f"Stage '{args.stage}' {verb} by {args.actor}")

    if args.resume:
        return drive(submitter.resume(args.run_id), args)
    console.print(f"[dim]Continue with: convoy resume {args.run_id}[/dim]")
    return 0


def handle_approve(args) -> int:
    return resolve(args, approve=True)


def handle_decline(args) -> int:
    return resolve(args, approve=False)


def handle_cancel(args) -> int:
    if args.api:
        api_call(args, "POST", f"/{args.run_id}/cancel")
    else:
        store = RunSubmitter().store
        snapshot = store.load(args.run_id)
        if snapshot.terminal:
            print_error(f"Run {args.run_id} already finished {snapshot.status.value}")
            return 1
        store.mark_cancelled(args.run_id, actor=args.actor)
    print_success(f"Run {args.run_id} cancelled")
    return 0


def handle_token(args) -> int:
    from app.core.security import create_operator_token

    token = create_operator_token(args.name, timedelta(minutes=args.expires) if args.expires else None)
    console.print(token, soft_wrap=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Convoy release coordinator")
    parser.add_argument("--actor", default=os.environ.get("CONVOY_ACTOR") or getpass.getuser(),
                        help="Name recorded on approval decisions")

    remote = parser.add_argument_group("Remote API")
    remote.add_argument("--api", default=CONVOY_API_URL, help="Convoy API base URL")
    remote.add_argument("--token", default=os.environ.get("CONVOY_TOKEN"), help="Operator bearer token")

    subparsers = parser.add_subparsers(dest="command", required=True)

    def with_context(p):
        p.add_argument("definition", help="Pipeline definition (.yml/.yaml/.json)")
        p.add_argument("--version", help="Release version (default: latest git tag)")
        p.add_argument("--branch", help="Branch name (default: current git branch)")
        p.add_argument("--environment", help="Target environment (default: CONVOY_ENVIRONMENT)")
        p.add_argument("--revision", help="Source revision (default: git HEAD)")
        return p

    def with_driving(p):
        p.add_argument("-i", "--interactive", action="store_true",
                       help="Prompt for approvals instead of detaching")
        return p

    p = with_context(subparsers.add_parser("plan", help="Show the stage plan without running it"))
    p.set_defaults(func=handle_plan)

    p = with_driving(with_context(subparsers.add_parser("run", help="Start a run")))
    p.set_defaults(func=handle_run)

    p = with_driving(subparsers.add_parser("resume", help="Continue a detached or failed run"))
    p.add_argument("run_id")
    p.set_defaults(func=handle_resume)

    p = subparsers.add_parser("status", help="Show the state of a run")
    p.add_argument("run_id")
    p.set_defaults(func=handle_status)

    p = subparsers.add_parser("list", help="List recorded runs")
    p.set_defaults(func=handle_list)

    p = subparsers.add_parser("approvals", help="List pending approvals of a run")
    p.add_argument("run_id")
    p.set_defaults(func=handle_approvals)

    p = with_driving(subparsers.add_parser("approve", help="Approve a gated stage"))
    p.add_argument("run_id")
    p.add_argument("stage")
    p.add_argument("--resume", action="store_true", help="Resume the run right away")
    p.set_defaults(func=handle_approve)

    p = with_driving(subparsers.add_parser("decline", help="Decline a gated stage"))
    p.add_argument("run_id")
    p.add_argument("stage")
    p.add_argument("--reason")
    p.add_argument("--resume", action="store_true", help="Resume the run right away")
    p.set_defaults(func=handle_decline)

    p = subparsers.add_parser("cancel", help="Cancel a run")
    p.add_argument("run_id")
    p.set_defaults(func=handle_cancel)

    p = subparsers.add_parser("token", help="Issue an operator token for the API")
    p.add_argument("name")
    p.add_argument("--expires", type=int, help="Lifetime in minutes")
    p.set_defaults(func=handle_token)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.command not in ("token",):
        print_header()
    try:
        return args.func(args)
    except RunNotFound as e:
        print_error(f"Run not found: {e}")
    except (RunSubmissionError, RunActive, UnknownGate, GateAlreadyResolved) as e:
        print_error(str(e))
    except requests.exceptions.HTTPError as e:
        print_error(f"API error: {e.response.status_code}", e.response.text)
    except requests.exceptions.RequestException:
        print_error(f"Failed to connect to API at {args.api}. Is it running?")
    return 1


if __name__ == "__main__":
    sys.exit(main())
