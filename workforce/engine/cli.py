"""CLI entry point for inspecting a workforce.

Usage:
    workforce --company company.yaml agents
    workforce --company company.yaml capacity Engineering
    workforce --company company.yaml match tasks/login-bug.yaml
    workforce --company company.yaml experts --skills python api --topic "API design"

The company file may also come from WORKFORCE_COMPANY_FILE. Nothing
here starts worker processes; ``match`` only ranks candidates.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import yaml
from rich.console import Console
from rich.table import Table

from .config import EngineConfig
from .engine import OrchestrationEngine
from .errors import OrchestrationError
from .models import Priority, TaskSpec


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workforce",
        description="Inspect agents and task routing for a workforce company file",
    )
    parser.add_argument(
        "--company", "-c",
        default=None,
        help="Company YAML file (default: $WORKFORCE_COMPANY_FILE)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("agents", help="List agents with status and workload")

    capacity = sub.add_parser("capacity", help="Show headcount and availability")
    capacity.add_argument(
        "department", nargs="?", default=None,
        help="Restrict to one department",
    )

    match = sub.add_parser("match", help="Rank agents for a task file")
    match.add_argument(
        "task_file",
        help="YAML file with title, skills, description, priority",
    )

    experts = sub.add_parser("experts", help="Find agents for a set of skills")
    experts.add_argument("--skills", nargs="+", required=True)
    experts.add_argument("--topic", default="")
    experts.add_argument("--limit", type=int, default=3)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    console = Console()
    config = EngineConfig.from_env()
    company_file = args.company or config.company_file
    if not company_file:
        console.print(
            "[red]Error:[/red] provide --company or set WORKFORCE_COMPANY_FILE."
        )
        return 1
    if not Path(company_file).is_file():
        console.print(f"[red]Error:[/red] company file not found: {company_file}")
        return 1

    try:
        engine = OrchestrationEngine.from_company_file(company_file, base=config)
        if args.command == "agents":
            _print_agents(console, engine)
        elif args.command == "capacity":
            _print_capacity(console, engine, args.department)
        elif args.command == "match":
            _print_match(console, engine, args.task_file)
        elif args.command == "experts":
            _print_experts(console, engine, args.skills, args.topic, args.limit)
    except (OrchestrationError, yaml.YAMLError, OSError, ValueError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return 1
    return 0


def _print_agents(console: Console, engine: OrchestrationEngine) -> None:
    table = Table(title="Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Role")
    table.add_column("Department")
    table.add_column("Status")
    table.add_column("Workload", justify="right")
    table.add_column("Skills")
    for agent in engine.directory.list():
        table.add_row(
            agent.agent_id,
            agent.name,
            agent.role,
            agent.department,
            agent.status.value,
            str(agent.workload),
            ", ".join(agent.skills),
        )
    console.print(table)


def _print_capacity(
    console: Console, engine: OrchestrationEngine, department: str | None,
) -> None:
    departments = [department] if department else engine.directory.departments()
    table = Table(title="Capacity")
    table.add_column("Department", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("Available", justify="right")
    table.add_column("Avg workload", justify="right")
    for name in departments:
        cap = engine.directory.capacity(name)
        table.add_row(
            name, str(cap["total"]), str(cap["available"]),
            f"{cap['average_workload']:.1f}",
        )
    overall = engine.directory.capacity()
    table.add_row(
        "(all)", str(overall["total"]), str(overall["available"]),
        f"{overall['average_workload']:.1f}",
    )
    console.print(table)


def _load_task_spec(path: str) -> TaskSpec:
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raw = {"title": str(raw)}
    skills = raw.get("skills", raw.get("skills_required", []))
    if isinstance(skills, str):
        skills = [s.strip() for s in skills.split(",")]
    return TaskSpec(
        title=str(raw.get("title", "")),
        skills_required=skills or [],
        description=str(raw.get("description", "")),
        priority=Priority(str(raw.get("priority", "medium")).lower()),
    )


def _print_match(
    console: Console, engine: OrchestrationEngine, task_file: str,
) -> None:
    spec = _load_task_spec(task_file)
    task = engine.submit_task(spec)
    ranked = engine.dispatcher.rank_candidates(task.task_id)
    table = Table(title=f"Candidates for: {task.title}")
    table.add_column("#", justify="right")
    table.add_column("Agent", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Skill matches", justify="right")
    table.add_column("Workload", justify="right")
    for position, candidate in enumerate(ranked, start=1):
        table.add_row(
            str(position),
            candidate.agent.agent_id,
            str(candidate.score),
            str(candidate.skill_matches),
            str(candidate.agent.workload),
        )
    console.print(table)
    if not ranked:
        console.print("[yellow]No eligible agent.[/yellow]")


def _print_experts(
    console: Console,
    engine: OrchestrationEngine,
    skills: list[str],
    topic: str,
    limit: int,
) -> None:
    experts = engine.find_experts(topic, skills, limit=limit)
    table = Table(title=f"Experts{f' for {topic}' if topic else ''}")
    table.add_column("Agent", style="cyan")
    table.add_column("Name")
    table.add_column("Department")
    table.add_column("Workload", justify="right")
    table.add_column("Skills")
    for agent in experts:
        table.add_row(
            agent.agent_id, agent.name, agent.department,
            str(agent.workload), ", ".join(agent.skills),
        )
    console.print(table)


if __name__ == "__main__":
    sys.exit(main())
