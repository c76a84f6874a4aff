"""Shared fixtures: a scripted command runner and a quiet console."""
from __future__ import annotations

import threading
from typing import Dict, List, Optional, Union

import pytest

from actionsmith.executor import CommandOutcome, CommandRunner
from actionsmith.orchestrator import Orchestrator
from actionsmith.secrets import StaticSecretVault
from actionsmith.ui.console import Console, set_console


class FakeRunner(CommandRunner):
    """
    Records every command instead of spawning a shell.

    Conventions:
      - "exit N ..."            -> exit code N
      - "set-output a=1 b=2"    -> success with outputs {a: 1, b: 2}
      - scripted[command]       -> that outcome (or the next of a list)
      - anything else           -> exit 0, stdout = command
    """

    def __init__(self, scripted: Optional[Dict[str, Union[CommandOutcome, List[CommandOutcome]]]] = None):
        self.scripted = dict(scripted or {})
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def run(self, command, env, working_dir, *, cancel=None, timeout=None):
        with self._lock:
            self.calls.append({"command": command, "env": dict(env), "working_dir": working_dir})
            scripted = self.scripted.get(command)
            if isinstance(scripted, list):
                scripted = scripted.pop(0) if scripted else None

        if scripted is not None:
            return scripted
        if command.startswith("exit "):
            return CommandOutcome(exit_code=int(command.split()[1]), stderr_tail=f"failed: {command}")
        if command.startswith("set-output "):
            pairs = dict(p.split("=", 1) for p in command.split()[1:])
            return CommandOutcome(exit_code=0, outputs=pairs)
        return CommandOutcome(exit_code=0, stdout_tail=command)

    @property
    def commands(self) -> List[str]:
        return [c["command"] for c in self.calls]


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def vault() -> StaticSecretVault:
    return StaticSecretVault(
        {"DEPLOY_TOKEN": "tok-global-123", "NPM_TOKEN": "npm-secret-456"},
        scoped={"production": {"DEPLOY_TOKEN": "tok-prod-789"}},
    )


@pytest.fixture
def orchestrator(runner, vault, quiet_console) -> Orchestrator:
    return Orchestrator(runner=runner, vault=vault, max_workers=4, console=quiet_console)
