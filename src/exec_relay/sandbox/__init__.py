"""Sandboxed process execution."""

from exec_relay.sandbox.isolation import Isolation, IsolationMode
from exec_relay.sandbox.runner import RunHandle, RunOutcome, SandboxRunner, StopReason

__all__ = [
    "Isolation",
    "IsolationMode",
    "RunHandle",
    "RunOutcome",
    "SandboxRunner",
    "StopReason",
]
