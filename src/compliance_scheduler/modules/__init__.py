"""
modules/ — Check Modules

Discovery (ModuleRegistry), command-line resolution (ModuleInvocation) and
process execution (ProcessModuleRunner) for the external check programs
tasks invoke.
"""

from compliance_scheduler.modules.registry import ModuleRegistry, load_manifest
from compliance_scheduler.modules.runner import ModuleRunner, ProcessModuleRunner
from compliance_scheduler.modules.types import (
    CancelToken,
    ModuleInvocation,
    ModuleManifest,
    ModuleOutcome,
    ModuleStatus,
)

__all__ = [
    "CancelToken",
    "ModuleInvocation",
    "ModuleManifest",
    "ModuleOutcome",
    "ModuleRegistry",
    "ModuleRunner",
    "ModuleStatus",
    "ProcessModuleRunner",
    "load_manifest",
]
