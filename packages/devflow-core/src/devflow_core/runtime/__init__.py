"""
Runtime collaborators package
"""

from devflow_core.runtime.base import (
    ProcessResult,
    ProcessRuntime,
    ServiceHandle,
    ServiceRuntime,
)
from devflow_core.runtime.local import (
    DryRunProcessRuntime,
    InProcessServiceRuntime,
    SubprocessRuntime,
    args_to_env,
)

__all__ = [
    "ProcessResult",
    "ProcessRuntime",
    "ServiceHandle",
    "ServiceRuntime",
    "DryRunProcessRuntime",
    "InProcessServiceRuntime",
    "SubprocessRuntime",
    "args_to_env",
]
