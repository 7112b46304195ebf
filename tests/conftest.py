"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import shlex
import sys
from pathlib import Path

import pytest

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"

_ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m agent_loop.agents.echo_agent {{prompt}}"
)


@pytest.fixture()
def echo_agent_command(monkeypatch) -> str:
    """Command template running the local echo agent; append flags as needed."""

    existing = os.environ.get("PYTHONPATH")
    pythonpath = str(_SRC_DIR) if not existing else f"{_SRC_DIR}{os.pathsep}{existing}"
    monkeypatch.setenv("PYTHONPATH", pythonpath)
    return _ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def clean_env(monkeypatch) -> None:
    """Drop AGENT_LOOP_* variables inherited from the developer shell."""

    for name in list(os.environ):
        if name.startswith("AGENT_LOOP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def prd_file(tmp_path: Path) -> Path:
    path = tmp_path / "prd.json"
    path.write_text(
        json.dumps(
            {
                "project": "demo",
                "userStories": [
                    {
                        "id": "US-001",
                        "title": "Create schema",
                        "description": "Add the tables.",
                        "acceptanceCriteria": ["Migration runs", "Tables exist"],
                        "priority": 1,
                        "passes": False,
                    },
                    {
                        "id": "US-002",
                        "title": "Expose API",
                        "priority": 2,
                        "passes": False,
                        "dependsOn": ["US-001"],
                    },
                    {
                        "id": "US-003",
                        "title": "Write docs",
                        "priority": 3,
                        "passes": False,
                        "notes": "Keep it short.",
                    },
                ],
            },
            indent=2,
        ),
        "utf-8",
    )
    return path
