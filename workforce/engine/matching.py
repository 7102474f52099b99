"""Skill matching for task assignment and expert lookup.

Task score:
    10 * |required ∩ agent.skills| + workload bonus
    bonus = 20 if workload < 50, 10 if workload < 80, else 0

Expert score:
    +10 per requested skill the agent has exactly
    +5  per requested skill that is a substring of (or contains) one
        of the agent's skills
    +20 / +10 if the agent is active with workload < 50 / < 80

Skills compare case-insensitively. Ranking ties go to the lower
workload, then to directory order.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .models import Agent, AgentStatus, Task


@dataclass(frozen=True)
class Candidate:
    agent: Agent
    score: int
    skill_matches: int
    index: int

    def to_dict(self) -> dict[str, object]:
        return {
            "agent_id": self.agent.agent_id,
            "name": self.agent.name,
            "score": self.score,
            "skill_matches": self.skill_matches,
            "workload": self.agent.workload,
        }


def _normalize(skills: Iterable[str]) -> set[str]:
    return {s.strip().lower() for s in skills if s and s.strip()}


def workload_bonus(agent: Agent) -> int:
    if agent.workload < 50:
        return 20
    if agent.workload < 80:
        return 10
    return 0


def skill_overlap(agent: Agent, required: Iterable[str]) -> int:
    have = _normalize(agent.skills)
    return len(_normalize(required) & have)


def score_agent_for_task(agent: Agent, task: Task) -> int:
    return 10 * skill_overlap(agent, task.skills_required) + workload_bonus(agent)


def is_eligible(agent: Agent) -> bool:
    """Every agent that is not offline is scored."""
    return agent.status != AgentStatus.OFFLINE


def _ordered(candidates: list[Candidate]) -> list[Candidate]:
    return sorted(
        candidates, key=lambda c: (-c.score, c.agent.workload, c.index),
    )


def rank_candidates(
    agents: Iterable[Agent],
    task: Task,
    exclude: Iterable[str] = (),
) -> list[Candidate]:
    """Agents scored for ``task``, best first. Zero scores are dropped."""
    skip = set(exclude)
    candidates: list[Candidate] = []
    for index, agent in enumerate(agents):
        if agent.agent_id in skip or not is_eligible(agent):
            continue
        score = score_agent_for_task(agent, task)
        if score <= 0:
            continue
        candidates.append(Candidate(
            agent=agent,
            score=score,
            skill_matches=skill_overlap(agent, task.skills_required),
            index=index,
        ))
    return _ordered(candidates)


def score_expert(agent: Agent, skills: Iterable[str]) -> int:
    have = _normalize(agent.skills)
    score = 0
    for skill in _normalize(skills):
        if skill in have:
            score += 10
        if any(skill in own or own in skill for own in have):
            score += 5
    if agent.status == AgentStatus.ACTIVE:
        score += workload_bonus(agent)
    return score


def rank_experts(
    agents: Iterable[Agent],
    skills: Iterable[str],
    limit: int = 3,
) -> list[Candidate]:
    wanted = list(skills)
    candidates: list[Candidate] = []
    for index, agent in enumerate(agents):
        score = score_expert(agent, wanted)
        if score <= 0:
            continue
        candidates.append(Candidate(
            agent=agent,
            score=score,
            skill_matches=skill_overlap(agent, wanted),
            index=index,
        ))
    ranked = _ordered(candidates)
    return ranked[:limit] if limit > 0 else ranked
