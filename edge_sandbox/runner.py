from __future__ import annotations

import asyncio
import json
import math
import os
import re
import sys
import tempfile
import time
import weakref
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from edge_sandbox.errors import (
    ERROR_KINDS,
    HANDLER_RUNTIME_ERROR,
    SYNTAX_ERROR,
    TIMEOUT,
    WORKER_CRASH,
    syntax_message,
)


LOGGER = structlog.get_logger("edge-sandbox")

RESULT_PREFIX = "EDGE_RESULT_JSON="
_RESULT_LINE_RE = re.compile(r"^EDGE_RESULT_JSON=(\{.*\})\s*$")
_PACKAGE_ROOT = Path(__file__).resolve().parent.parent
_WORKER_MODULE = "edge_sandbox.worker"

_limiters: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[int, asyncio.Semaphore]] = (
    weakref.WeakKeyDictionary()
)


@dataclass(frozen=True)
class SandboxConfig:
    timeout_seconds: float = 5.0
    # 0 disables the address-space limit.
    memory_limit_mb: int = 0
    max_concurrency: int = 4
    allow_fetch: bool = True
    fetch_timeout_seconds: float = 10.0
    base_url: str = "http://localhost"
    python_executable: str = field(default_factory=lambda: sys.executable)


@dataclass(frozen=True)
class SandboxResult:
    ok: bool
    status: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    timing: dict[str, int] = field(default_factory=dict)
    memory: int | None = None
    error: str | None = None
    error_kind: str | None = None
    stack: str | None = None
    logs: list[str] = field(default_factory=list)
    # Wall clock seen by the caller, worker spin-up included.
    elapsed_ms: float | None = None

    @classmethod
    def failure(
        cls,
        kind: str,
        message: str,
        *,
        stack: str = "",
        logs: list[str] | None = None,
        elapsed_ms: float | None = None,
    ) -> SandboxResult:
        return cls(
            ok=False,
            error=str(message or kind),
            error_kind=kind,
            stack=stack,
            logs=list(logs or []),
            elapsed_ms=elapsed_ms,
        )

    @classmethod
    def from_wire(cls, data: dict[str, Any], *, elapsed_ms: float | None = None) -> SandboxResult:
        logs = [str(x) for x in data.get("logs") or [] if x is not None]
        if "error" in data:
            kind = str(data.get("error_kind") or "").strip()
            return cls.failure(
                kind if kind in ERROR_KINDS else HANDLER_RUNTIME_ERROR,
                str(data.get("error") or ""),
                stack=str(data.get("stack") or ""),
                logs=logs,
                elapsed_ms=elapsed_ms,
            )
        timing = data.get("timing") if isinstance(data.get("timing"), dict) else {}
        headers = data.get("headers") if isinstance(data.get("headers"), dict) else {}
        return cls(
            ok=True,
            status=int(data.get("status") or 0),
            headers={str(k): str(v) for k, v in headers.items()},
            body=str(data.get("body") or ""),
            timing={"total": int(timing.get("total") or 0), "coldStart": int(timing.get("coldStart") or 0)},
            memory=int(data.get("memory") or 0),
            logs=logs,
            elapsed_ms=elapsed_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        if not self.ok:
            return {"error": self.error, "error_kind": self.error_kind, "stack": self.stack or "", "logs": self.logs}
        return {
            "status": self.status,
            "headers": dict(self.headers),
            "body": self.body,
            "timing": dict(self.timing),
            "memory": self.memory,
            "logs": self.logs,
        }

    def performance(self) -> dict[str, int]:
        return {
            "responseTime": int(round(self.elapsed_ms or 0.0)),
            "coldStart": int(self.timing.get("coldStart") or 0),
            "memory": int(self.memory or 0),
        }


def validate(code: str) -> None:
    """
    Syntax-only check: compiles the handler source without running any of it.
    Raises SyntaxError with the parser message.
    """
    try:
        compile(str(code or ""), "<handler>", "exec", dont_inherit=True)
    except SyntaxError:
        raise
    except ValueError as exc:
        # e.g. source containing null bytes
        raise SyntaxError(str(exc)) from exc


def _limiter(max_concurrency: int) -> asyncio.Semaphore:
    loop = asyncio.get_running_loop()
    per_loop = _limiters.setdefault(loop, {})
    size = max(1, int(max_concurrency))
    sem = per_loop.get(size)
    if sem is None:
        sem = asyncio.Semaphore(size)
        per_loop[size] = sem
    return sem


def _extract_result_json(text: str) -> dict[str, Any] | None:
    """
    The worker prints a single machine-readable line:
      EDGE_RESULT_JSON={...}
    We scan stdout for the last such line.
    """
    if not text:
        return None
    last = None
    for line in str(text).splitlines():
        m = _RESULT_LINE_RE.match(line.strip())
        if not m:
            continue
        last = m.group(1)
    if not last:
        return None
    try:
        data = json.loads(last)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _build_sandbox_env() -> dict[str, str]:
    """
    Minimize secret leakage: do not inherit the service's full env.
    """
    keep_keys = {"PATH", "LANG", "TZ", "SYSTEMROOT"}
    env: dict[str, str] = {}
    for k, v in os.environ.items():
        if k in keep_keys or k.startswith("LC_"):
            env[str(k)] = str(v)
    env["HOME"] = tempfile.gettempdir()
    env["PYTHONPATH"] = str(_PACKAGE_ROOT)
    env["PYTHONIOENCODING"] = "utf-8"
    env["PYTHONDONTWRITEBYTECODE"] = "1"
    return env


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)


async def _run_worker(code: str, request: dict[str, Any], cfg: SandboxConfig, started: float) -> SandboxResult:
    payload = {
        "code": code,
        "request": request,
        "base_url": cfg.base_url,
        "allow_fetch": bool(cfg.allow_fetch),
        "fetch_timeout_seconds": float(cfg.fetch_timeout_seconds),
        "memory_limit_mb": int(cfg.memory_limit_mb),
        # CPU rlimit is a backstop; the wall-clock timeout below fires first.
        "cpu_limit_seconds": int(math.ceil(float(cfg.timeout_seconds))) + 1,
        "spawned_at_ts": time.time(),
    }

    with tempfile.TemporaryDirectory(prefix="edge-sandbox-") as workdir:
        proc = await asyncio.create_subprocess_exec(
            cfg.python_executable,
            "-B",
            "-m",
            _WORKER_MODULE,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_build_sandbox_env(),
            cwd=workdir,
        )
        try:
            out_b, err_b = await asyncio.wait_for(
                proc.communicate(json.dumps(payload).encode("utf-8")),
                timeout=max(0.1, float(cfg.timeout_seconds)),
            )
        except asyncio.TimeoutError:
            LOGGER.warning("sandbox_timeout", timeout_seconds=cfg.timeout_seconds, pid=proc.pid)
            return SandboxResult.failure(
                TIMEOUT,
                f"handler did not finish within {float(cfg.timeout_seconds):g}s",
                elapsed_ms=_elapsed_ms(started),
            )
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

    out = (out_b or b"").decode("utf-8", errors="replace")
    err = (err_b or b"").decode("utf-8", errors="replace")
    parsed = _extract_result_json(out)
    if parsed is not None:
        return SandboxResult.from_wire(parsed, elapsed_ms=_elapsed_ms(started))

    LOGGER.warning("sandbox_worker_crash", returncode=proc.returncode, stderr_tail=err[-500:])
    return SandboxResult.failure(
        WORKER_CRASH,
        f"worker exited with code {proc.returncode} without a result",
        stack=err[-4000:],
        elapsed_ms=_elapsed_ms(started),
    )


async def run(code: str, request: dict[str, Any] | None = None, *, config: SandboxConfig | None = None) -> SandboxResult:
    """
    Execute handler source against a synthetic request in a fresh worker process.

    Always resolves to a SandboxResult; syntax errors, missing entry points, handler
    exceptions, timeouts and worker crashes all come back as failure results.
    """
    cfg = config or SandboxConfig()
    started = time.perf_counter()
    req = dict(request or {})
    src = str(code or "")

    try:
        validate(src)
    except SyntaxError as exc:
        return SandboxResult.failure(SYNTAX_ERROR, syntax_message(exc), elapsed_ms=_elapsed_ms(started))

    try:
        async with _limiter(cfg.max_concurrency):
            return await _run_worker(src, req, cfg, started)
    except Exception as exc:
        LOGGER.exception("sandbox_spawn_failed")
        return SandboxResult.failure(
            WORKER_CRASH,
            f"{type(exc).__name__}: {exc}",
            elapsed_ms=_elapsed_ms(started),
        )
