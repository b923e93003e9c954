"""
Root conftest — isolate configuration environment variables so settings
tests are not affected by the developer's or CI environment, and provide
on-disk check modules for the tests that spawn real processes.
"""
import os
import stat
import textwrap
from pathlib import Path

import pytest

_CONFIG_ENV_PREFIXES = ("ENGINE__", "TELEMETRY__", "LOGGING__")
_CONFIG_ENV_VARS = ["COMPLIANCE_SCHEDULER_CONFIG"]


@pytest.fixture(autouse=True)
def _isolate_config_env(monkeypatch):
    """Remove config env vars for every test so Settings() sees only what
    the test provides. Also disables .env file loading so a local developer
    .env does not leak into tests, and drops the settings singleton."""
    for var in list(os.environ):
        if var.upper().startswith(_CONFIG_ENV_PREFIXES):
            monkeypatch.delenv(var, raising=False)
    for var in _CONFIG_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import compliance_scheduler.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    settings_module.reset_settings()
    yield
    settings_module.reset_settings()


@pytest.fixture(autouse=True, scope="session")
def _structlog_to_stdlib():
    """Unconfigured structlog prints to stdout; route it through stdlib
    logging instead so CLI tests can parse what the commands print."""
    import structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"]),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )
    yield
    structlog.reset_defaults()


# ─────────────────────────────────────────────────────────────────────────────
# On-disk check modules
# ─────────────────────────────────────────────────────────────────────────────

# Arguments: ITER SLEEP_SECONDS EXIT_CODE
TEST_MODULE_SCRIPT = textwrap.dedent("""\
    #!/bin/sh
    iter=${1:-0}
    sleep "${2:-0}"
    rc=${3:-0}
    if [ -n "$rc" ] && [ "$rc" != "0" ]; then
        echo "This is to stdout"
        echo "This is to stderr" >&2
        exit "$rc"
    fi
    printf '{"testsRun": 1, "passCount": %s, "risk": "low"}\\n' "$iter"
""")

TEST_MODULE_MANIFEST = textwrap.dedent("""\
    name: {name}
    program: run.sh
    args: ["${{iter}}", "${{sleepTime}}", "${{rc}}"]
""")


def write_module(root: Path, name: str, script: str = TEST_MODULE_SCRIPT,
                 executable: bool = True, manifest: str | None = None) -> Path:
    directory = root / name
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "module.yaml").write_text(
        manifest if manifest is not None else TEST_MODULE_MANIFEST.format(name=name)
    )
    program = directory / "run.sh"
    program.write_text(script)
    mode = program.stat().st_mode
    if executable:
        program.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    else:
        program.chmod(mode & ~(stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))
    return directory


@pytest.fixture
def modules_dir(tmp_path) -> Path:
    """test-module (runnable) and fail-module (not executable)."""
    root = tmp_path / "modules"
    write_module(root, "test-module")
    write_module(root, "fail-module", executable=False)
    return root


@pytest.fixture
def make_module(modules_dir):
    """Factory: add another module directory next to the standard ones."""
    def _make(name: str, script: str = TEST_MODULE_SCRIPT, **kwargs) -> Path:
        return write_module(modules_dir, name, script, **kwargs)
    return _make


# ─────────────────────────────────────────────────────────────────────────────
# In-process runner
# ─────────────────────────────────────────────────────────────────────────────

class FakeRunner:
    """
    ModuleRunner that never spawns anything. Behaviour is driven by the
    task parameters, like the on-disk test module:

        sleepTime   seconds to "run" (cancellable)
        rc          exit status (non-zero prints the stdout/stderr pair)
        iter        reported as passCount
        launchFail  "1" raises ProcessLaunchError
        stdout      overrides the JSON printed on success
    """

    def __init__(self, modules=("test-module",)):
        self.modules = set(modules)
        self.calls: list[tuple[str, dict]] = []
        self.in_flight: dict[str, int] = {}
        self.max_in_flight: dict[str, int] = {}
        self.cancelled = 0

    def exists(self, module: str) -> bool:
        return module in self.modules

    async def run(self, module, parameters, cancel):
        import asyncio
        import json

        from compliance_scheduler.exceptions import ModuleRunCancelled, ProcessLaunchError
        from compliance_scheduler.modules import ModuleInvocation, ModuleOutcome

        params = dict(parameters)
        self.calls.append((module, params))
        key = params.get("key", module)
        path = f"/modules/{module}/run.sh"
        invocation = ModuleInvocation(
            module=module,
            path=path,
            args=(path, params.get("iter", ""), params.get("sleepTime", ""), params.get("rc", "")),
            env=(("PATH", "/usr/bin:/bin"),),
            cwd=f"/modules/{module}",
        )

        self.in_flight[key] = self.in_flight.get(key, 0) + 1
        self.max_in_flight[key] = max(self.max_in_flight.get(key, 0), self.in_flight[key])
        try:
            if params.get("launchFail") == "1":
                raise ProcessLaunchError(module, invocation, f"fork/exec {path}: permission denied")
            sleep = float(params.get("sleepTime") or 0)
            if sleep:
                try:
                    await asyncio.wait_for(cancel.wait(), timeout=sleep)
                except asyncio.TimeoutError:
                    pass
            if cancel.cancelled:
                self.cancelled += 1
                raise ModuleRunCancelled(module)

            rc = int(params.get("rc") or 0)
            if rc:
                return ModuleOutcome(invocation, rc, "This is to stdout\n", "This is to stderr\n")
            stdout = params.get("stdout") or json.dumps(
                {"testsRun": 1, "passCount": int(params.get("iter") or 0), "risk": "low"}
            )
            return ModuleOutcome(invocation, 0, stdout + "\n", "")
        finally:
            self.in_flight[key] -= 1


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()
