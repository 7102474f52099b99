"""YAML company file loader.

One file describes the agent directory, the default way to start a
worker, and optional engine overrides. Env vars still provide the
base EngineConfig; keys under ``engine:`` win over them.

Example YAML:
    engine:
      max_restarts: 5
      task_timeout_seconds: 1800

    spawn:
      command: claude
      args: ["--print"]
      cwd: /srv/workforce
      env:
        WORKFORCE_ROLE: employee

    agents:
      - id: alex
        name: Alex Chen
        role: Backend Engineer
        department: Engineering
        skills: [python, api, databases]
        spawn:                     # per-agent override
          args: ["--print", "--model", "opus"]

The original registry shape is accepted too:

    employees:
      alex:
        name: Alex Chen
        department: Engineering
        status: active             # inactive/maintenance map to offline
        skills: [python]
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .errors import ValidationError
from .models import Agent, AgentStatus, SpawnConfig

logger = logging.getLogger(__name__)

# Registry statuses without a direct counterpart.
_STATUS_ALIASES = {
    "inactive": AgentStatus.OFFLINE,
    "maintenance": AgentStatus.OFFLINE,
}

_ENGINE_SKIP = {"event_callback"}


@dataclass
class CompanyConfig:
    """Complete parsed company file."""
    engine: EngineConfig
    agents: list[Agent]
    # agent_id -> SpawnConfig for agents that override the defaults
    spawn_overrides: dict[str, SpawnConfig] = field(default_factory=dict)
    company: dict[str, Any] = field(default_factory=dict)

    def spawn_config_for(self, agent_id: str) -> SpawnConfig:
        return self.spawn_overrides.get(agent_id) or self.engine.default_spawn_config()


def _apply_engine_overrides(engine: EngineConfig, raw: dict[str, Any]) -> None:
    known = {f.name for f in fields(engine)} - _ENGINE_SKIP
    for key, value in raw.items():
        if key not in known:
            logger.warning("Unknown engine setting in company file: %s", key)
            continue
        current = getattr(engine, key)
        try:
            if isinstance(current, bool):
                coerced: Any = (
                    value if isinstance(value, bool)
                    else str(value).strip().lower() in {"1", "true", "yes", "on"}
                )
            elif isinstance(current, int):
                coerced = int(value)
            elif isinstance(current, float):
                coerced = float(value)
            elif isinstance(current, list):
                coerced = [str(v) for v in value]
            elif isinstance(current, dict):
                coerced = {str(k): str(v) for k, v in dict(value).items()}
            else:
                coerced = value
        except (TypeError, ValueError):
            raise ValidationError(
                f"engine.{key}", f"cannot use {value!r}"
            ) from None
        setattr(engine, key, coerced)


def _apply_spawn_defaults(engine: EngineConfig, raw: dict[str, Any]) -> None:
    if "command" in raw:
        engine.spawn_command = str(raw["command"])
    if "args" in raw:
        engine.spawn_args = [str(a) for a in raw["args"] or []]
    if "cwd" in raw:
        engine.default_cwd = str(raw["cwd"])
    if "env" in raw:
        engine.spawn_env = {str(k): str(v) for k, v in (raw["env"] or {}).items()}
    if "max_memory_bytes" in raw:
        engine.max_memory_bytes = int(raw["max_memory_bytes"])


def _spawn_override(
    engine: EngineConfig, raw: dict[str, Any], base_dir: Path,
) -> SpawnConfig:
    spawn = engine.default_spawn_config()
    if "command" in raw:
        spawn.command = str(raw["command"])
    if "args" in raw:
        spawn.args = [str(a) for a in raw["args"] or []]
    if "cwd" in raw:
        cwd = Path(str(raw["cwd"])).expanduser()
        if not cwd.is_absolute():
            cwd = base_dir / cwd
        spawn.cwd = str(cwd)
    if "env" in raw:
        spawn.env = {**spawn.env, **{str(k): str(v) for k, v in raw["env"].items()}}
    if "max_memory_bytes" in raw:
        spawn.max_memory_bytes = int(raw["max_memory_bytes"])
    if "max_cpu_percent" in raw:
        spawn.max_cpu_percent = float(raw["max_cpu_percent"])
    return spawn


def _parse_agent(agent_id: str, raw: dict[str, Any]) -> Agent:
    if not agent_id:
        raise ValidationError("agents", "every agent needs an id")
    status_raw = str(raw.get("status", "active")).lower()
    status = _STATUS_ALIASES.get(status_raw)
    if status is None:
        try:
            status = AgentStatus(status_raw)
        except ValueError:
            raise ValidationError(
                f"agents.{agent_id}.status", f"unknown status {status_raw!r}"
            ) from None
    skills = raw.get("skills") or []
    if isinstance(skills, str):
        skills = [s.strip() for s in skills.split(",")]
    return Agent(
        agent_id=agent_id,
        name=str(raw.get("name", agent_id)),
        role=str(raw.get("role", "")),
        department=str(raw.get("department", "")),
        skills=[str(s) for s in skills if str(s).strip()],
        workload=int(raw.get("workload", 0) or 0),
        status=status,
        level=str(raw.get("level", "")),
        metadata={
            k: v for k, v in raw.items()
            if k not in {
                "id", "name", "role", "department", "skills", "workload",
                "status", "level", "spawn",
            }
        },
    )


def _iter_agent_entries(raw: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
    entries: list[tuple[str, dict[str, Any]]] = []
    agents_raw = raw.get("agents") or []
    if isinstance(agents_raw, dict):
        entries.extend((str(k), dict(v or {})) for k, v in agents_raw.items())
    else:
        for item in agents_raw:
            item = dict(item or {})
            entries.append((str(item.get("id", "")), item))
    employees_raw = raw.get("employees") or {}
    entries.extend((str(k), dict(v or {})) for k, v in employees_raw.items())
    return entries


def load_company_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> CompanyConfig:
    """Load and parse a company YAML file.

    ``base`` supplies the starting EngineConfig (EngineConfig.from_env()
    when omitted). Raises FileNotFoundError, yaml.YAMLError, or
    ValidationError.
    """
    path = Path(path)
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_company_config: file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_company_config: YAML parse error in %s: %s", path, exc)
        raise
    if not isinstance(raw, dict):
        raise ValidationError(str(path), "top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed company file %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    engine = base if base is not None else EngineConfig.from_env()
    engine.company_file = str(path)
    _apply_engine_overrides(engine, raw.get("engine") or {})
    _apply_spawn_defaults(engine, raw.get("spawn") or {})

    agents: list[Agent] = []
    overrides: dict[str, SpawnConfig] = {}
    seen: set[str] = set()
    for agent_id, entry in _iter_agent_entries(raw):
        agent = _parse_agent(agent_id, entry)
        if agent.agent_id in seen:
            raise ValidationError("agents", f"duplicate agent id {agent.agent_id}")
        seen.add(agent.agent_id)
        agents.append(agent)
        if entry.get("spawn"):
            overrides[agent.agent_id] = _spawn_override(
                engine, dict(entry["spawn"]), path.parent,
            )

    logger.info(
        "Company file %s: %d agent(s), %d spawn override(s)",
        path.name, len(agents), len(overrides),
    )
    return CompanyConfig(
        engine=engine,
        agents=agents,
        spawn_overrides=overrides,
        company=dict(raw.get("company") or {}),
    )
