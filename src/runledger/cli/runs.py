"""Run CLI commands: dashboard, ls, show, resume-state, start, cancel."""

from __future__ import annotations

import json
from typing import Annotated, Any

import typer

from runledger.cli._db import async_storage, open_storage, run_async
from runledger.cli._format import (
    DEFAULT_LIMIT,
    format_datetime,
    format_duration,
    format_status,
    parse_since,
    print_ctas,
    print_json,
    print_lines,
    print_table,
    run_duration_ms,
    truncate_value,
)
from runledger.config import load_config
from runledger.exceptions import InvalidTransition, LedgerIntegrityError, RunNotFoundError, ValidationError
from runledger.resume import build_resume_state
from runledger.run_store import RunStore
from runledger.types import Checkpoint, CheckpointType, Run, RunStatus

app = typer.Typer(help="Inspect and manage runs.")

# Common options
DbOption = Annotated[str | None, typer.Option("--db", help="Database path (default: [tool.runledger] db or ./runs.db)")]
JsonFlag = Annotated[bool, typer.Option("--json", help="Output as JSON")]
LimitOption = Annotated[int, typer.Option("--limit", help="Max results")]

_ACTIVE = (RunStatus.PENDING, RunStatus.RUNNING)


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(1)


def _load_run(storage: Any, run_id: str) -> Run:
    run = storage.run(run_id)
    if run is None:
        _fail(f"Run '{run_id}' not found.")
    return run


def _print_run_table(runs: list[Run]) -> None:
    headers = ["ID", "Key", "Agent", "Loop", "Status", "Iters", "Duration", "Created"]
    rows = [
        [
            r.id,
            truncate_value(r.caller_idempotency_key, 24),
            r.agent_kind,
            r.loop_kind,
            format_status(r.status.value),
            str(r.current_iteration),
            format_duration(run_duration_ms(r)),
            format_datetime(r.created_at),
        ]
        for r in runs
    ]
    print_lines(print_table(headers, rows))


@app.callback(invoke_without_command=True)
def runs_dashboard(
    ctx: typer.Context,
    db: DbOption = None,
    as_json: JsonFlag = False,
):
    """Quick status dashboard: active + recent runs."""
    if ctx.invoked_subcommand is not None:
        return

    storage = open_storage(db)
    all_runs = storage.runs()

    active = [r for r in all_runs if r.status in _ACTIVE]
    recent = [r for r in all_runs if r.status not in _ACTIVE][:5]

    if as_json:
        print_json("runs", {"active": [r.to_dict() for r in active], "recent": [r.to_dict() for r in recent]})
        return

    if not all_runs:
        print("No runs found.")
        print(f"\n  Database: {storage.path}")
        print("  To create one, use: runledger runs start --key <key> --agent <kind> --loop <kind>")
        return

    if active:
        print(f"\nActive ({len(active)})\n")
        _print_run_table(active)
    if recent:
        print(f"\nRecent (last {len(recent)})\n")
        _print_run_table(recent)

    print_ctas(
        [
            "runledger runs ls                   for all runs",
            "runledger runs ls --status failed   for failures only",
            "runledger runs show <id>            to inspect a run's ledger",
        ]
    )


@app.command("ls")
def runs_ls(
    db: DbOption = None,
    status: Annotated[list[str] | None, typer.Option("--status", help="Filter by status (repeatable)")] = None,
    agent: Annotated[str | None, typer.Option("--agent", help="Filter by agent kind")] = None,
    since: Annotated[str | None, typer.Option("--since", help="Created within (e.g. 1h, 7d, 2w)")] = None,
    limit: LimitOption = DEFAULT_LIMIT,
    as_json: JsonFlag = False,
):
    """List runs with filters, newest first."""
    storage = open_storage(db)

    filters: dict[str, Any] = {"limit": limit, "agent_kind": agent}
    if since:
        try:
            filters["since"] = parse_since(since)
        except ValueError as e:
            _fail(str(e))

    if status:
        run_list: list[Run] = []
        for s in status:
            try:
                run_status = RunStatus(s.lower())
            except ValueError:
                _fail(f"Unknown status '{s}'. Use: {', '.join(st.value for st in RunStatus)}")
            run_list.extend(storage.runs(status=run_status, **filters))
        run_list = sorted(run_list, key=lambda r: r.created_at, reverse=True)[:limit]
    else:
        run_list = storage.runs(**filters)

    if as_json:
        print_json("runs.ls", [r.to_dict() for r in run_list])
        return

    if not run_list:
        print("No runs found matching filters.")
        return

    print(f"\nRuns ({len(run_list)})\n")
    _print_run_table(run_list)
    print_ctas(["runledger runs show <id>   to inspect a run's ledger"])


def _checkpoint_detail(checkpoint: Checkpoint, show_values: bool) -> str:
    data = checkpoint.data
    if show_values:
        return json.dumps(data, default=str)
    if checkpoint.type in (CheckpointType.TOOL_CALL_START, CheckpointType.TOOL_RESULT):
        return f"{data['tool']}({truncate_value(data['args'], 40)})"
    if "text" in data:
        return truncate_value(data["text"], 60)
    return ""


@app.command("show")
def runs_show(
    run_id: Annotated[str, typer.Argument(help="Run ID to show")],
    db: DbOption = None,
    checkpoint_type: Annotated[
        list[str] | None, typer.Option("--type", help="Only checkpoints of this type (repeatable)")
    ] = None,
    show_values: Annotated[bool, typer.Option("--values", help="Show full checkpoint payloads")] = False,
    as_json: JsonFlag = False,
):
    """Show a run and its checkpoint ledger."""
    storage = open_storage(db)
    run = _load_run(storage, run_id)
    checkpoints = storage.checkpoints(run_id)

    if checkpoint_type:
        wanted = set()
        for t in checkpoint_type:
            try:
                wanted.add(CheckpointType(t))
            except ValueError:
                _fail(f"Unknown checkpoint type '{t}'. Use: {', '.join(ct.value for ct in CheckpointType)}")
        checkpoints = [c for c in checkpoints if c.type in wanted]

    if as_json:
        print_json("runs.show", {"run": run.to_dict(), "checkpoints": [c.to_dict() for c in checkpoints]})
        return

    print(
        f"\nRun: {run.id} ({run.agent_kind}/{run.loop_kind}) | {format_status(run.status.value)} | "
        f"iteration {run.current_iteration} | {len(checkpoints)} checkpoints\n"
    )
    if run.error:
        print(f"  error: {run.error}\n")
    if run.output:
        print(f"  output: {truncate_value(run.output.get('text'), 200)}\n")

    if not checkpoints:
        print("  No checkpoints recorded.")
    else:
        headers = ["Seq", "Iter", "Type", "Status", "Detail"]
        rows = [
            [
                str(c.sequence),
                str(c.iteration),
                c.type.value,
                format_status(c.status.value),
                _checkpoint_detail(c, show_values),
            ]
            for c in checkpoints
        ]
        print_lines(print_table(headers, rows))

    ctas = [f"runledger runs resume-state {run_id}   to see where a resume would start"]
    if not show_values:
        ctas.append(f"runledger runs show {run_id} --values   for full payloads")
    if run.status in _ACTIVE:
        ctas.insert(0, "Run is still active. Re-run to see new checkpoints.")
    print_ctas(ctas)


@app.command("resume-state")
def runs_resume_state(
    run_id: Annotated[str, typer.Argument(help="Run ID")],
    db: DbOption = None,
    as_json: JsonFlag = False,
):
    """Show what a resumed executor would find in the ledger."""
    storage = open_storage(db)
    run = _load_run(storage, run_id)
    try:
        state = build_resume_state(run, storage.checkpoints(run_id))
    except LedgerIntegrityError as e:
        _fail(str(e))

    if as_json:
        print_json("runs.resume-state", state.to_dict())
        return

    print(f"\nResume state: {run.id} | {format_status(run.status.value)}\n")
    print(f"  checkpoints:          {len(state.checkpoints)}")
    print(f"  last iteration:       {state.last_iteration}")
    print(f"  completed iteration:  {state.completed_iteration}")
    print(f"  next iteration:       {state.next_iteration}")
    print(f"  next sequence:        {state.next_sequence}")
    print(f"  conversation:         {state.conversation_id or '—'}")
    print(f"  finished:             {'yes' if state.is_finished else 'no'}")
    print(f"  recorded tool calls:  {len(state.satisfied)}")

    if state.in_flight:
        print(f"\n  Unconfirmed tool calls ({len(state.in_flight)}):\n")
        rows = [
            [str(c.sequence), str(c.iteration), c.data["tool"], truncate_value(c.data["args"], 60)]
            for c in sorted(state.in_flight.values(), key=lambda c: c.sequence)
        ]
        print_lines(print_table(["Seq", "Iter", "Tool", "Args"], rows))

    lease = storage.lease(run_id)
    if lease is not None:
        print(f"\n  lease: {lease.owner} until {format_datetime(lease.expires_at)}")


@app.command("start")
def runs_start(
    key: Annotated[str, typer.Option("--key", help="Caller idempotency key")],
    agent: Annotated[str, typer.Option("--agent", help="Agent kind")],
    loop: Annotated[str, typer.Option("--loop", help="Loop kind")],
    input_json: Annotated[str, typer.Option("--input", help="Input payload as a JSON object")] = "{}",
    timeout: Annotated[
        float | None, typer.Option("--timeout", help="Timeout in seconds (default: [tool.runledger] timeout_seconds)")
    ] = None,
    db: DbOption = None,
    as_json: JsonFlag = False,
):
    """Create a pending run. Repeating a key returns the existing run."""
    try:
        payload = json.loads(input_json)
    except json.JSONDecodeError as e:
        _fail(f"--input is not valid JSON: {e}")
    if timeout is None:
        timeout = load_config().timeout_seconds

    async def _start() -> Run:
        async with async_storage(db) as storage:
            return await RunStore(storage).start(key, agent, loop, payload, timeout)

    try:
        run = run_async(_start())
    except ValidationError as e:
        _fail(str(e))

    if as_json:
        print_json("runs.start", run.to_dict())
        return
    print(f"Run {run.id} ({format_status(run.status.value)})")


@app.command("cancel")
def runs_cancel(
    run_id: Annotated[str, typer.Argument(help="Run ID to cancel")],
    db: DbOption = None,
    as_json: JsonFlag = False,
):
    """Cancel a pending or running run.

    The executor notices at its next iteration boundary.
    """

    async def _cancel() -> Run:
        async with async_storage(db) as storage:
            store = RunStore(storage)
            return await store.cancel(await store.get(run_id))

    try:
        run = run_async(_cancel())
    except RunNotFoundError:
        _fail(f"Run '{run_id}' not found.")
    except InvalidTransition as e:
        _fail(f"Run '{run_id}' is already {e.run.status.value}.")

    if as_json:
        print_json("runs.cancel", run.to_dict())
        return
    print(f"Run {run.id} cancelled at {format_datetime(run.cancelled_at)}")
