from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import date
from typing import Any

import typer
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from wbs_engine.core.config import EngineConfig, load_and_merge
from wbs_engine.core.errors import ConfigError, ProjectLoadError, ProjectValidationError, WBSError
from wbs_engine.core.io.dump_schedule import dump_schedule_yaml, schedule_document
from wbs_engine.core.io.load_project import load_project
from wbs_engine.core.model import Node, Schedule
from wbs_engine.core.project.workspace import Workspace
from wbs_engine.core.validate.validate_project import project_summary, summarize_project, validate_project

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()

FORMATS = ("text", "json")
GANTT_WIDTH = 60

PathArg = typer.Argument(..., help="Path to a project file (.yaml/.yml/.json)")
FormatOpt = typer.Option("text", "--format", help="Output format: text|json")
ConfigOpt = typer.Option(
    None,
    "--config",
    envvar="WBS_ENGINE_CONFIG",
    help="Optional YAML file overriding engine settings",
)


@app.callback()
def _callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr"),
) -> None:
    """WBS scheduling engine CLI."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command("validate")
def validate(
    path: str = PathArg,
    format: str = FormatOpt,
    config: str | None = ConfigOpt,
) -> None:
    """Validate a project file and replay it through the engine."""
    ws, project_id = _open("validate", path, format, config)
    with ws:
        if format == "text":
            typer.echo(summarize_project(ws, project_id))
            return
        _emit_json("validate", True, exit_code=0, errors=[], summary=project_summary(ws, project_id))


@app.command("schedule")
def schedule(
    path: str = PathArg,
    format: str = FormatOpt,
    deadline: str | None = typer.Option(None, "--deadline", help="Deadline date (YYYY-MM-DD) overriding target_date"),
    out: str | None = typer.Option(None, "--out", help="Also write the schedule as YAML to this path"),
    strict: bool = typer.Option(False, "--strict", help="Exit 3 when the schedule misses its deadline"),
    config: str | None = ConfigOpt,
) -> None:
    """Run the critical path method over a project file."""
    deadline_date = _parse_deadline(deadline, format)
    ws, project_id = _open("schedule", path, format, config)
    with ws:
        try:
            sched = ws.get_schedule(project_id, deadline=deadline_date, wait=True)
        except WBSError as e:
            _fail("schedule", format, [e], exit_code=2)

        if out:
            dump_schedule_yaml(ws, project_id, sched, out)

        errors: list[WBSError] = []
        if strict:
            try:
                sched.raise_if_infeasible()
            except WBSError as e:
                errors.append(e)
        exit_code = 3 if errors else 0

        if format == "json":
            doc = schedule_document(ws, project_id, sched)
            _emit_json("schedule", not errors, exit_code=exit_code, errors=errors, summary=None, schedule=doc)

        _print_schedule(ws, project_id, sched)
        if out:
            typer.echo(f"OK: wrote schedule to {out}")
        if errors:
            _print_errors(errors)
            raise typer.Exit(code=exit_code)


@app.command("critical-path")
def critical_path(
    path: str = PathArg,
    format: str = FormatOpt,
    config: str | None = ConfigOpt,
) -> None:
    """List every critical chain of the project."""
    ws, project_id = _open("critical-path", path, format, config)
    with ws:
        try:
            paths = ws.get_critical_path(project_id)
        except WBSError as e:
            _fail("critical-path", format, [e], exit_code=2)

        if format == "json":
            _emit_json("critical-path", True, exit_code=0, errors=[], summary=None, critical_paths=paths)
        if not paths:
            typer.echo("No critical path (every node has float)")
            return
        for i, p in enumerate(paths, start=1):
            typer.echo(f"{i}: " + " -> ".join(p))


@app.command("gantt")
def gantt(
    path: str = PathArg,
    format: str = FormatOpt,
    config: str | None = ConfigOpt,
) -> None:
    """Show the project as Gantt bars."""
    ws, project_id = _open("gantt", path, format, config)
    with ws:
        try:
            bars = ws.get_gantt(project_id)
        except WBSError as e:
            _fail("gantt", format, [e], exit_code=2)

        if format == "json":
            _emit_json("gantt", True, exit_code=0, errors=[], summary=None, bars=[asdict(b) for b in bars])

        finish = max((b.end_day for b in bars if b.end_day is not None), default=0)
        scale = max(1.0, finish / GANTT_WIDTH)
        table = Table(title=f"{ws.get_project(project_id).name} (days 0-{finish})")
        table.add_column("ID")
        table.add_column("Title")
        table.add_column("Start")
        table.add_column("End")
        table.add_column("Bar", no_wrap=True)
        for b in bars:
            if b.start_day is None or b.end_day is None:
                table.add_row(b.id, b.title, "-", "-", "(unscheduled)")
                continue
            lead = int(b.start_day / scale)
            length = max(1, int((b.end_day - b.start_day) / scale))
            mark = "◆" if b.is_milestone else ("█" if b.is_critical else "▒")
            bar = " " * lead + mark * (1 if b.is_milestone else length)
            table.add_row(b.id, b.title, str(b.start or b.start_day), str(b.end or b.end_day), bar)
        console.print(table)


@app.command("tree")
def tree(
    path: str = PathArg,
    config: str | None = ConfigOpt,
) -> None:
    """Print the work breakdown structure with rolled-up progress."""
    ws, project_id = _open("tree", path, "text", config)
    with ws:
        root = Tree(f"[bold]{ws.get_project(project_id).name}[/bold]")

        def add(branch: Tree, node: Node) -> None:
            label = f"{node.title} [dim]{node.id}[/dim] {node.progress:g}% {node.status}"
            if node.assignee_id:
                label += f" [cyan]@{node.assignee_id}[/cyan]"
            child = branch.add(label)
            for kid in ws.list_children(node.id):
                add(child, kid)

        for r in ws.list_roots(project_id):
            add(root, r)
        console.print(root)


def _open(command: str, path: str, format: str, config_file: str | None) -> tuple[Workspace, str]:
    if format not in FORMATS:
        err = ProjectValidationError(
            code="E_UNKNOWN_FORMAT",
            message=f"unknown format: {format} (choose one of: {', '.join(FORMATS)})",
            path="format",
        )
        _print_errors([err])
        raise typer.Exit(code=2)

    cfg = _load_config(command, format, config_file)

    try:
        doc = load_project(path)
    except ProjectLoadError as e:
        _fail(command, format, [e], exit_code=1)

    ws, errors = validate_project(doc, config=cfg)
    if errors or ws is None:
        _fail(command, format, list(errors), exit_code=2)
    return ws, doc["project"]["id"]


def _load_config(command: str, format: str, config_file: str | None) -> EngineConfig:
    try:
        return load_and_merge(config_file)
    except FileNotFoundError:
        err = ProjectLoadError(
            code="E_CONFIG_FILE_NOT_FOUND",
            message=f"config file not found: {config_file}",
            path="config",
        )
        _fail(command, format, [err], exit_code=1)
    except ConfigError as e:
        _fail(command, format, [e], exit_code=2)


def _parse_deadline(value: str | None, format: str) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        err = ProjectValidationError(
            code="E_INVALID_DATE",
            message=f"deadline must be an ISO date (YYYY-MM-DD), got {value!r}",
            path="deadline",
        )
        _fail("schedule", format, [err], exit_code=2)


def _print_schedule(ws: Workspace, project_id: str, sched: Schedule) -> None:
    table = Table(title=f"{ws.get_project(project_id).name} (rev {sched.revision})")
    for col in ("ID", "Title", "Dur", "ES", "EF", "LS", "LF", "Float", "Critical"):
        table.add_column(col)
    for row in schedule_document(ws, project_id, sched)["nodes"]:
        if not row["scheduled"]:
            table.add_row(row["id"], row["title"], *["-"] * 7)
            continue
        table.add_row(
            row["id"],
            row["title"],
            str(row["duration"]),
            str(row["earliest_start"]),
            str(row["earliest_finish"]),
            str(row["latest_start"]),
            str(row["latest_finish"]),
            str(row["float"]),
            "yes" if row["is_critical"] else "",
        )
    console.print(table)
    typer.echo(f"Project finish: day {sched.project_finish}")
    if sched.deadline is not None:
        typer.echo(f"Deadline: day {sched.deadline}")
    if sched.unscheduled:
        typer.echo("Unscheduled: " + ", ".join(sched.unscheduled))
    if sched.infeasible:
        typer.echo("At risk: " + ", ".join(sched.at_risk))


def _to_item(e: WBSError) -> dict:
    source = "load" if isinstance(e, ProjectLoadError) else "validate" if isinstance(e, ProjectValidationError) else "engine"
    return {
        "code": e.code,
        "message": e.message,
        "file": e.file,
        "path": e.path,
        "node_id": e.node_id,
        "severity": "error",
        "source": source,
    }


def _emit_json(
    command: str,
    ok: bool,
    *,
    exit_code: int,
    errors: list[WBSError],
    summary: dict | None,
    **extra: Any,
) -> None:
    payload = {
        "tool": "wbs",
        "command": command,
        "ok": ok,
        "error_count": len(errors),
        "errors": [_to_item(e) for e in errors],
        "summary": summary,
        **extra,
    }
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))
    raise typer.Exit(code=exit_code)


def _fail(command: str, format: str, errors: list[WBSError], *, exit_code: int) -> None:
    if format == "json":
        _emit_json(command, False, exit_code=exit_code, errors=errors, summary=None)
    _print_errors(errors)
    raise typer.Exit(code=exit_code)


def _print_errors(errors: list[WBSError]) -> None:
    errors_sorted = sorted(errors, key=lambda e: (e.file or "", e.path or "", e.code))
    for e in errors_sorted:
        typer.echo(str(e), err=True)


def main() -> None:
    app(prog_name="wbs")


cli = typer.main.get_command(app)

if __name__ == "__main__":
    main()
