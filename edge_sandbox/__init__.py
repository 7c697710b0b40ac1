"""Isolated execution of edge handler source against a synthetic request."""

from edge_sandbox.errors import ERROR_KINDS, HandlerNotFoundError, HandlerRuntimeError, SandboxError
from edge_sandbox.runner import SandboxConfig, SandboxResult, run, validate

__all__ = [
    "ERROR_KINDS",
    "HandlerNotFoundError",
    "HandlerRuntimeError",
    "SandboxConfig",
    "SandboxError",
    "SandboxResult",
    "run",
    "validate",
]
