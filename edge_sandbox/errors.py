from __future__ import annotations

from dataclasses import dataclass


SYNTAX_ERROR = "SyntaxError"
HANDLER_NOT_FOUND = "HandlerNotFoundError"
HANDLER_RUNTIME_ERROR = "HandlerRuntimeError"
TIMEOUT = "Timeout"
WORKER_CRASH = "WorkerCrash"

ERROR_KINDS = frozenset({SYNTAX_ERROR, HANDLER_NOT_FOUND, HANDLER_RUNTIME_ERROR, TIMEOUT, WORKER_CRASH})


@dataclass(frozen=True)
class SandboxError(Exception):
    message: str
    kind: str = HANDLER_RUNTIME_ERROR

    def __str__(self) -> str:
        return self.message


class HandlerNotFoundError(SandboxError):
    def __init__(self, message: str = "handler source must define a callable `default` or `handler`") -> None:
        super().__init__(message, HANDLER_NOT_FOUND)


class HandlerRuntimeError(SandboxError):
    def __init__(self, message: str) -> None:
        super().__init__(message, HANDLER_RUNTIME_ERROR)


def syntax_message(exc: SyntaxError) -> str:
    if exc.lineno:
        return f"{exc.msg} (line {exc.lineno})"
    return str(exc.msg or exc)


def clean_text(value: object) -> str:
    """Replace lone surrogates so the text survives UTF-8 encoding."""
    return str(value).encode("utf-8", "replace").decode("utf-8")
