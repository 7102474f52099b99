"""CLI commands against a small company file."""

from __future__ import annotations

import textwrap

import pytest

from workforce.engine.cli import main


@pytest.fixture
def company_file(tmp_path, monkeypatch):
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.delenv("WORKFORCE_COMPANY_FILE", raising=False)
    path = tmp_path / "company.yaml"
    path.write_text(textwrap.dedent("""\
        agents:
          - id: alex
            name: Alex Chen
            department: Engineering
            skills: [python, api]
            workload: 30
          - id: bea
            name: Bea Stone
            department: Design
            skills: [design]
            workload: 40
          - id: cy
            name: Cy Park
            department: Engineering
            skills: [python]
            workload: 10
    """))
    return path


def test_agents_lists_every_agent(company_file, capsys):
    assert main(["--company", str(company_file), "agents"]) == 0
    out = capsys.readouterr().out
    assert "Alex Chen" in out
    assert "Bea Stone" in out
    assert "python, api" in out


def test_capacity_for_one_department(company_file, capsys):
    assert main(["-c", str(company_file), "capacity", "Engineering"]) == 0
    out = capsys.readouterr().out
    assert "Engineering" in out
    assert "20.0" in out
    assert "(all)" in out


def test_match_ranks_candidates(company_file, tmp_path, capsys):
    task = tmp_path / "task.yaml"
    task.write_text("title: Build API\nskills: [python, api]\npriority: high\n")

    assert main(["-c", str(company_file), "match", str(task)]) == 0

    out = capsys.readouterr().out
    assert "Candidates for: Build API" in out
    assert out.index("alex") < out.index("cy")
    assert out.index("cy") < out.index("bea")


def test_match_without_candidates(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("COLUMNS", "200")
    company = tmp_path / "full.yaml"
    company.write_text(textwrap.dedent("""\
        agents:
          - id: dana
            name: Dana Ruiz
            skills: [design]
            workload: 90
          - id: eli
            name: Eli Brook
            skills: [rust]
            status: offline
    """))
    task = tmp_path / "task.yaml"
    task.write_text("title: Write Rust\nskills: rust\n")

    assert main(["-c", str(company), "match", str(task)]) == 0
    assert "No eligible agent." in capsys.readouterr().out


def test_experts(company_file, capsys):
    assert main([
        "-c", str(company_file), "experts", "--skills", "design", "--limit", "1",
    ]) == 0
    out = capsys.readouterr().out
    assert "Bea Stone" in out
    assert "Alex Chen" not in out


def test_company_file_from_environment(company_file, monkeypatch, capsys):
    monkeypatch.setenv("WORKFORCE_COMPANY_FILE", str(company_file))
    assert main(["agents"]) == 0
    assert "Cy Park" in capsys.readouterr().out


def test_missing_company_file(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("WORKFORCE_COMPANY_FILE", raising=False)
    assert main(["agents"]) == 1
    assert main(["-c", str(tmp_path / "nope.yaml"), "agents"]) == 1
    assert "not found" in capsys.readouterr().out


def test_invalid_task_file_reports_error(company_file, tmp_path, capsys):
    task = tmp_path / "task.yaml"
    task.write_text("title: ''\n")

    assert main(["-c", str(company_file), "match", str(task)]) == 1
    assert "Error" in capsys.readouterr().out
