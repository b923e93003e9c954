"""
modules/types.py — Check Module Data Contracts

  - ModuleManifest:   validated contents of a module's module.yaml
  - ModuleInvocation: fully resolved command line for one run
  - ModuleOutcome:    what came back from a process that ran to exit
  - ModuleStatus:     per-module load status (the Load operation)
  - CancelToken:      cancellation signal threaded from the calendar into
                      the process launch
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator


# ─────────────────────────────────────────────────────────────────────────────
# ModuleManifest — module.yaml
# ─────────────────────────────────────────────────────────────────────────────

class ModuleManifest(BaseModel):
    """
    Declares how to run a check module.

    args and env values are string.Template strings rendered from the
    task's parameters: `${sleepTime}` becomes the task's sleepTime value,
    and a parameter the task does not set renders as an empty string.
    """
    name: str
    description: str = ""
    program: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("name", "program")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    def build_invocation(self, directory: Path, parameters: Mapping[str, str],
                         base_env: Mapping[str, str]) -> "ModuleInvocation":
        values = defaultdict(str, parameters)
        program = Path(self.program)
        path = program if program.is_absolute() else directory / program
        argv = (str(path), *(Template(a).substitute(values) for a in self.args))
        env = dict(base_env)
        env.update({k: Template(v).substitute(values) for k, v in self.env.items()})
        return ModuleInvocation(
            module=self.name,
            path=str(path),
            args=argv,
            env=tuple(env.items()),
            cwd=str(directory),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Invocation / outcome
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ModuleInvocation:
    module: str
    path: str
    args: tuple[str, ...]                  # argv[0] is the program path
    env: tuple[tuple[str, str], ...]
    cwd: str

    def env_dict(self) -> dict[str, str]:
        return dict(self.env)

    def describe(self) -> str:
        """Stable one-line rendering used in every failure message."""
        args = " ".join(self.args)
        env = " ".join(f"{k}={v}" for k, v in self.env)
        return f"{{Path={self.path} Args=[{args}] Env=[{env}] Dir={self.cwd}}}"


@dataclass(frozen=True)
class ModuleOutcome:
    invocation: ModuleInvocation
    exit_status: int                       # negative = killed by that signal
    stdout: str
    stderr: str
    duration_s: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0


@dataclass(frozen=True)
class ModuleStatus:
    name: str
    running: bool
    errstr: Optional[str] = None
    directory: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────────────
# CancelToken
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class CancelToken:
    """
    One-shot cancellation signal.

    Created per generation by the calendar. Runners race their child
    process against wait(); the dispatcher checks `cancelled` before every
    output it would publish.
    """
    reason: str = ""
    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
