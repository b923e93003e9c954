"""
modules/runner.py — Check Module Runner

The capability the dispatcher calls to execute one check module:

    runner.exists(module)                      -> bool
    await runner.run(module, params, cancel)   -> ModuleOutcome

run() returns a ModuleOutcome for any process that ran to exit (zero or
not). Classifying the outcome is the dispatcher's job. It raises:
  - ProcessLaunchError  the program could not be started
  - ModuleRunCancelled  the cancel token fired; the child has been killed

ProcessModuleRunner spawns every module in its own session so that a
cancellation kills the whole process group, including children the
module forked (a shell script's `sleep`, for instance). Without that the
grandchild would keep the output pipes open and the kill would not be
prompt.

stdout and stderr are read in chunks; bytes past max_output_bytes are
read and discarded, so a chatty module cannot grow memory or stall on a
full pipe.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
from typing import Mapping, Protocol, runtime_checkable

from compliance_scheduler.exceptions import ModuleRunCancelled, ProcessLaunchError
from compliance_scheduler.modules.registry import ModuleRegistry
from compliance_scheduler.modules.types import CancelToken, ModuleOutcome
from compliance_scheduler.observability.logger import get_logger

log = get_logger(__name__)

MAX_OUTPUT_BYTES = 1_000_000
_REAP_TIMEOUT_S = 5.0
_READ_CHUNK = 64 * 1024


@runtime_checkable
class ModuleRunner(Protocol):
    def exists(self, module: str) -> bool: ...

    async def run(self, module: str, parameters: Mapping[str, str],
                  cancel: CancelToken) -> ModuleOutcome: ...


class ProcessModuleRunner:
    """Runs check modules from a ModuleRegistry as local child processes."""

    def __init__(self, registry: ModuleRegistry,
                 max_output_bytes: int = MAX_OUTPUT_BYTES) -> None:
        self._registry = registry
        self._max_output_bytes = max_output_bytes

    @property
    def registry(self) -> ModuleRegistry:
        return self._registry

    def exists(self, module: str) -> bool:
        return self._registry.exists(module)

    async def run(self, module: str, parameters: Mapping[str, str],
                  cancel: CancelToken) -> ModuleOutcome:
        invocation = self._registry.build_invocation(module, parameters)
        if cancel.cancelled:
            raise ModuleRunCancelled(module)

        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *invocation.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=invocation.cwd,
                env=invocation.env_dict(),
                start_new_session=True,
            )
        except OSError as e:
            reason = (e.strerror or str(e)).lower()
            raise ProcessLaunchError(
                module, invocation, f"fork/exec {invocation.path}: {reason}"
            ) from e

        log.debug("runner.process_started", module=module, pid=proc.pid)

        communicate = asyncio.ensure_future(self._collect(proc))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({communicate, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not communicate.done():
                await self._kill(proc, communicate, module)

        if communicate.cancelled() or (cancel.cancelled and proc.returncode != 0):
            raise ModuleRunCancelled(module)

        stdout_b, stderr_b = communicate.result()
        outcome = ModuleOutcome(
            invocation=invocation,
            exit_status=proc.returncode if proc.returncode is not None else -1,
            stdout=self._decode(stdout_b),
            stderr=self._decode(stderr_b),
            duration_s=time.monotonic() - started,
        )
        log.debug(
            "runner.process_exited",
            module=module,
            pid=proc.pid,
            exit_status=outcome.exit_status,
            duration_s=round(outcome.duration_s, 3),
        )
        return outcome

    # ── Internals ─────────────────────────────────────────────────────────────

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process, communicate: asyncio.Future,
                    module: str) -> None:
        with contextlib.suppress(ProcessLookupError):
            os.killpg(proc.pid, signal.SIGKILL)
        try:
            await asyncio.wait_for(communicate, timeout=_REAP_TIMEOUT_S)
        except asyncio.TimeoutError:
            log.warning("runner.reap_timeout", module=module, pid=proc.pid)
        log.info("runner.process_killed", module=module, pid=proc.pid)

    async def _collect(self, proc: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
        stdout_b, stderr_b = await asyncio.gather(
            self._read_capped(proc.stdout), self._read_capped(proc.stderr),
        )
        await proc.wait()
        return stdout_b, stderr_b

    async def _read_capped(self, stream: asyncio.StreamReader | None) -> bytes:
        if stream is None:
            return b""
        kept = bytearray()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return bytes(kept)
            room = self._max_output_bytes - len(kept)
            if room > 0:
                kept += chunk[:room]

    @staticmethod
    def _decode(data: bytes | None) -> str:
        if not data:
            return ""
        return data.decode("utf-8", errors="replace")
