"""
tests/unit/test_modules.py — Module Registry, Invocation & Process Runner

Covers:
  - ModuleRegistry: discovery, load() statuses, broken/disabled manifests,
    name defaulting, programmatic register()
  - ModuleInvocation: parameter rendering, environment, describe() format
  - ProcessModuleRunner: success, non-zero exit, launch failure,
    cancellation kills the process group promptly
"""

from __future__ import annotations

import asyncio
import os
import re
import time
from pathlib import Path

import pytest

from compliance_scheduler.exceptions import (
    CheckModuleNotFoundError,
    ModuleRunCancelled,
    ProcessLaunchError,
)
from compliance_scheduler.modules import (
    CancelToken,
    ModuleInvocation,
    ModuleManifest,
    ModuleRegistry,
    ProcessModuleRunner,
    load_manifest,
)


@pytest.fixture
def registry(modules_dir) -> ModuleRegistry:
    reg = ModuleRegistry(modules_dir)
    reg.load()
    return reg


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────

class TestRegistry:

    def test_load_reports_each_module(self, modules_dir):
        statuses = ModuleRegistry(modules_dir).load()
        assert [(s.name, s.running, s.errstr) for s in statuses] == [
            ("fail-module", True, None),
            ("test-module", True, None),
        ]

    def test_exists(self, registry):
        assert registry.exists("test-module")
        assert not registry.exists("no-such-module")

    def test_get_unknown_raises(self, registry):
        with pytest.raises(CheckModuleNotFoundError) as exc:
            registry.get("no-such-module")
        assert str(exc.value) == "Module no-such-module does not exist"

    def test_broken_manifest_recorded_not_existing(self, make_module, modules_dir):
        make_module("broken", manifest="program: [unterminated\n")
        reg = ModuleRegistry(modules_dir)
        statuses = {s.name: s for s in reg.load()}
        assert statuses["broken"].running is False
        assert statuses["broken"].errstr
        assert not reg.exists("broken")
        assert reg.exists("test-module")

    def test_manifest_missing_program(self, make_module, modules_dir):
        make_module("no-program", manifest="description: nothing to run\n")
        reg = ModuleRegistry(modules_dir)
        statuses = {s.name: s for s in reg.load()}
        assert "program" in statuses["no-program"].errstr

    def test_name_defaults_to_directory(self, make_module):
        directory = make_module("unnamed", manifest="program: run.sh\n")
        assert load_manifest(directory).name == "unnamed"

    def test_disabled_module_listed_but_not_existing(self, make_module, modules_dir):
        make_module("off", manifest="program: run.sh\nenabled: false\n")
        reg = ModuleRegistry(modules_dir)
        statuses = {s.name: s for s in reg.load()}
        assert statuses["off"].running is False
        assert statuses["off"].errstr is None
        assert not reg.exists("off")

    def test_missing_dir_is_empty(self, tmp_path):
        assert ModuleRegistry(tmp_path / "nope").load() == []

    def test_register_programmatically(self, tmp_path):
        reg = ModuleRegistry()
        reg.register(ModuleManifest(name="inline", program="/bin/true"), tmp_path)
        assert reg.exists("inline")
        with pytest.raises(ValueError):
            reg.register(ModuleManifest(name="inline", program="/bin/true"), tmp_path)

    def test_names_and_len(self, registry):
        assert registry.names() == ["fail-module", "test-module"]
        assert len(registry) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Invocation
# ─────────────────────────────────────────────────────────────────────────────

class TestInvocation:

    def test_parameters_rendered_in_argv(self, registry, modules_dir):
        inv = registry.build_invocation("test-module", {"iter": "3", "sleepTime": "0", "rc": "1"})
        path = str(modules_dir / "test-module" / "run.sh")
        assert inv.path == path
        assert inv.args == (path, "3", "0", "1")
        assert inv.cwd == str(modules_dir / "test-module")

    def test_missing_parameter_renders_empty(self, registry):
        inv = registry.build_invocation("test-module", {"iter": "1"})
        assert inv.args[1:] == ("1", "", "")

    def test_env_has_path_then_module_env(self, make_module, modules_dir):
        make_module("with-env", manifest=(
            'program: run.sh\nenv:\n  CHECK_ITER: "${iter}"\n'
        ))
        reg = ModuleRegistry(modules_dir)
        reg.load()
        inv = reg.build_invocation("with-env", {"iter": "7"})
        assert inv.env[0] == ("PATH", os.environ.get("PATH", os.defpath))
        assert inv.env_dict()["CHECK_ITER"] == "7"

    def test_describe_format(self):
        inv = ModuleInvocation(
            module="m", path="/x/run.sh", args=("/x/run.sh", "0", "1"),
            env=(("PATH", "/bin"), ("A", "b")), cwd="/x",
        )
        assert inv.describe() == "{Path=/x/run.sh Args=[/x/run.sh 0 1] Env=[PATH=/bin A=b] Dir=/x}"

    def test_absolute_program_kept(self, tmp_path):
        inv = ModuleManifest(name="abs", program="/bin/echo").build_invocation(tmp_path, {}, {})
        assert inv.path == "/bin/echo"


# ─────────────────────────────────────────────────────────────────────────────
# Process runner
# ─────────────────────────────────────────────────────────────────────────────

class TestProcessRunner:

    @pytest.mark.asyncio
    async def test_success_outcome(self, registry):
        runner = ProcessModuleRunner(registry)
        outcome = await runner.run("test-module", {"iter": "4", "sleepTime": "0", "rc": "0"}, CancelToken())
        assert outcome.succeeded
        assert outcome.exit_status == 0
        assert '"passCount": 4' in outcome.stdout
        assert outcome.stderr == ""

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_an_outcome(self, registry):
        runner = ProcessModuleRunner(registry)
        outcome = await runner.run("test-module", {"iter": "1", "sleepTime": "0", "rc": "1"}, CancelToken())
        assert outcome.exit_status == 1
        assert outcome.stdout == "This is to stdout\n"
        assert outcome.stderr == "This is to stderr\n"

    @pytest.mark.asyncio
    async def test_launch_failure(self, registry, modules_dir):
        runner = ProcessModuleRunner(registry)
        with pytest.raises(ProcessLaunchError) as exc:
            await runner.run("fail-module", {"iter": "0", "sleepTime": "0", "rc": "1"}, CancelToken())
        path = re.escape(str(modules_dir / "fail-module" / "run.sh"))
        assert re.match(
            rf"^Could not start module fail-module via \{{Path={path} Args=\[{path} 0 0 1\] "
            rf"Env=\[.*\] Dir=.*\}} \(fork/exec {path}: permission denied\)$",
            str(exc.value),
        )

    @pytest.mark.asyncio
    async def test_cancel_kills_promptly(self, registry):
        runner = ProcessModuleRunner(registry)
        token = CancelToken()
        started = time.monotonic()
        run = asyncio.create_task(
            runner.run("test-module", {"iter": "1", "sleepTime": "5", "rc": "0"}, token)
        )
        await asyncio.sleep(0.3)
        token.cancel("test")
        with pytest.raises(ModuleRunCancelled):
            await run
        assert time.monotonic() - started < 2.0

    @pytest.mark.asyncio
    async def test_already_cancelled_never_spawns(self, registry):
        token = CancelToken()
        token.cancel()
        with pytest.raises(ModuleRunCancelled):
            await ProcessModuleRunner(registry).run("test-module", {}, token)

    @pytest.mark.asyncio
    async def test_output_truncated(self, make_module, modules_dir):
        make_module("chatty", script="#!/bin/sh\nhead -c 5000 /dev/zero | tr '\\0' 'x'\n")
        reg = ModuleRegistry(modules_dir)
        reg.load()
        outcome = await ProcessModuleRunner(reg, max_output_bytes=1024).run("chatty", {}, CancelToken())
        assert len(outcome.stdout) == 1024

    @pytest.mark.asyncio
    async def test_large_output_drained_but_not_kept(self, make_module, modules_dir):
        make_module("flood", script="#!/bin/sh\nhead -c 5000000 /dev/zero | tr '\\0' 'x'\necho oops >&2\n")
        reg = ModuleRegistry(modules_dir)
        reg.load()
        outcome = await ProcessModuleRunner(reg, max_output_bytes=2048).run("flood", {}, CancelToken())
        assert outcome.exit_status == 0
        assert outcome.stdout == "x" * 2048
        assert outcome.stderr == "oops\n"

    @pytest.mark.asyncio
    async def test_reader_keeps_at_most_cap(self, registry):
        stream = asyncio.StreamReader()
        for _ in range(10):
            stream.feed_data(b"y" * 100_000)
        stream.feed_eof()
        kept = await ProcessModuleRunner(registry, max_output_bytes=1500)._read_capped(stream)
        assert kept == b"y" * 1500

    def test_exists_delegates(self, registry):
        runner = ProcessModuleRunner(registry)
        assert runner.exists("test-module")
        assert not runner.exists("nope")
