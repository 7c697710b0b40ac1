"""Child-process entry point for a single edge handler invocation.

Reads one JSON payload from stdin, runs the handler inside the allow-list
environment from `edge_sandbox.runtime`, and prints exactly one
`EDGE_RESULT_JSON=` line on stdout. Never import this module from the service
process; `edge_sandbox.runner` spawns it with `python -m edge_sandbox.worker`.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import resource
import sys
import time
import traceback
from typing import Any, Callable

from edge_sandbox.errors import (
    HANDLER_RUNTIME_ERROR,
    SYNTAX_ERROR,
    WORKER_CRASH,
    HandlerNotFoundError,
    HandlerRuntimeError,
    SandboxError,
    clean_text,
    syntax_message,
)
from edge_sandbox.runtime import URL, Console, Request, Response, build_globals


RESULT_PREFIX = "EDGE_RESULT_JSON="
HANDLER_FILENAME = "<handler>"


def _safe_str(x: Any, *, max_len: int = 2000) -> str:
    s = clean_text(x or "")
    return s if len(s) <= max_len else s[:max_len]


def _peak_rss_mb() -> int:
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports KiB, macOS reports bytes.
    if sys.platform == "darwin":
        return int(round(usage / (1024 * 1024)))
    return int(round(usage / 1024))


def _apply_limits(*, cpu_seconds: int, memory_limit_mb: int) -> None:
    if cpu_seconds > 0:
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
    if memory_limit_mb > 0:
        limit = int(memory_limit_mb) * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))


def _pick_entry(namespace: dict[str, Any]) -> Callable[..., Any]:
    fn = namespace.get("default")
    if callable(fn):
        return fn
    fn = namespace.get("handler")
    if callable(fn):
        return fn
    raise HandlerNotFoundError()


async def _await(value: Any) -> Any:
    return await value


def _invoke(entry: Callable[..., Any], request: Request) -> Response:
    out = entry(request)
    if inspect.isawaitable(out):
        out = asyncio.run(_await(out))
    if not isinstance(out, Response):
        raise HandlerRuntimeError(f"handler must return a Response, got {type(out).__name__}")
    return out


def _failure(kind: str, message: str, *, stack: str = "", console: Console | None = None) -> dict[str, Any]:
    return {
        "error": _safe_str(message) or kind,
        "error_kind": kind,
        "stack": _safe_str(stack, max_len=50_000),
        "logs": list(console.lines) if console is not None else [],
    }


def execute(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Run one handler invocation and return the wire-format result dict.
    Every failure is returned, never raised.
    """
    console = Console()
    namespace = build_globals(
        console=console,
        allow_fetch=bool(payload.get("allow_fetch", True)),
        fetch_timeout_seconds=float(payload.get("fetch_timeout_seconds") or 10.0),
    )
    code = str(payload.get("code") or "")
    desc = payload.get("request") if isinstance(payload.get("request"), dict) else {}
    base_url = str(payload.get("base_url") or "http://localhost")
    spawned_at_ts = float(payload.get("spawned_at_ts") or time.time())

    try:
        compiled = compile(code, HANDLER_FILENAME, "exec", dont_inherit=True)
    except SyntaxError as exc:
        return _failure(SYNTAX_ERROR, syntax_message(exc), stack=traceback.format_exc(), console=console)
    except ValueError as exc:
        return _failure(SYNTAX_ERROR, str(exc), stack=traceback.format_exc(), console=console)

    try:
        exec(compiled, namespace)  # noqa: S102
        entry = _pick_entry(namespace)

        request = Request(
            URL(base_url).join(str(desc.get("url") or "/")),
            method=str(desc.get("method") or "GET"),
            headers=desc.get("headers") if isinstance(desc.get("headers"), dict) else None,
            body=desc.get("body"),
        )

        invoked_at_ts = time.time()
        started = time.perf_counter()
        response = _invoke(entry, request)
        body = response.text()
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        return {
            "status": int(response.status),
            "headers": {clean_text(k): clean_text(v) for k, v in response.headers.items()},
            "body": body,
            "timing": {
                "total": int(round(elapsed_ms)),
                "coldStart": max(0, int(round((invoked_at_ts - spawned_at_ts) * 1000.0))),
            },
            "memory": _peak_rss_mb(),
            "logs": list(console.lines),
        }
    except SandboxError as exc:
        return _failure(exc.kind, str(exc), stack=traceback.format_exc(), console=console)
    except Exception as exc:
        return _failure(
            HANDLER_RUNTIME_ERROR,
            f"{type(exc).__name__}: {exc}",
            stack=traceback.format_exc(),
            console=console,
        )


def main() -> None:
    raw = sys.stdin.read()
    try:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("payload must be a JSON object")
    except ValueError as exc:
        result = _failure(WORKER_CRASH, f"invalid_payload: {exc}")
    else:
        _apply_limits(
            cpu_seconds=int(payload.get("cpu_limit_seconds") or 0),
            memory_limit_mb=int(payload.get("memory_limit_mb") or 0),
        )
        result = execute(payload)

    # ASCII-only keeps the result line writable whatever the handler produced.
    sys.stdout.write(RESULT_PREFIX + json.dumps(result, ensure_ascii=True, sort_keys=True) + "\n")
    sys.stdout.flush()
    sys.exit(1 if "error" in result else 0)


if __name__ == "__main__":
    main()
