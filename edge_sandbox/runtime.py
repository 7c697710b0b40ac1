"""Primitives exposed to edge handler code.

Handlers only see what `build_globals` hands them: the request/response
constructor set, `fetch`, `console`, `crypto`, a safe subset of builtins and an
import hook limited to pure stdlib helpers. Nothing here touches the file
system, the process or the environment.
"""

from __future__ import annotations

import builtins
import hashlib
import json
import secrets
import uuid
from typing import Any, Mapping

import httpx

from edge_sandbox.errors import clean_text


Headers = httpx.Headers
URL = httpx.URL

MAX_CONSOLE_LINES = 200
MAX_CONSOLE_LINE_LEN = 2000

ALLOWED_MODULES = frozenset(
    {
        "base64",
        "collections",
        "dataclasses",
        "datetime",
        "functools",
        "hashlib",
        "hmac",
        "html",
        "itertools",
        "json",
        "math",
        "random",
        "re",
        "string",
        "time",
        "typing",
        "urllib.parse",
        "uuid",
    }
)

_SAFE_BUILTINS = (
    "abs",
    "all",
    "any",
    "ascii",
    "bin",
    "bool",
    "bytearray",
    "bytes",
    "callable",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "format",
    "frozenset",
    "hasattr",
    "hash",
    "hex",
    "int",
    "isinstance",
    "issubclass",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "oct",
    "ord",
    "pow",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "classmethod",
    "staticmethod",
    "property",
    "super",
    "object",
    "NotImplemented",
    "Ellipsis",
    "None",
    "True",
    "False",
    "__build_class__",
    # Exceptions handlers commonly raise or catch.
    "ArithmeticError",
    "AssertionError",
    "AttributeError",
    "Exception",
    "ImportError",
    "IndexError",
    "KeyError",
    "LookupError",
    "NotImplementedError",
    "OverflowError",
    "PermissionError",
    "RuntimeError",
    "StopAsyncIteration",
    "StopIteration",
    "TimeoutError",
    "TypeError",
    "UnicodeDecodeError",
    "UnicodeEncodeError",
    "ValueError",
    "ZeroDivisionError",
)


def _to_bytes(body: Any) -> bytes:
    if body is None:
        return b""
    if isinstance(body, bytes):
        return body
    if isinstance(body, (bytearray, memoryview)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    raise TypeError(f"unsupported body type: {type(body).__name__}")


class Request:
    def __init__(
        self,
        url: str | URL,
        method: str = "GET",
        headers: Mapping[str, str] | Headers | None = None,
        body: str | bytes | None = None,
    ) -> None:
        self.url = str(url)
        self.method = str(method or "GET").strip().upper() or "GET"
        self.headers = Headers(headers or {})
        self.body = _to_bytes(body)

    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.text())

    def __repr__(self) -> str:
        return f"<Request {self.method} {self.url}>"


class Response:
    def __init__(
        self,
        body: str | bytes | None = None,
        status: int = 200,
        headers: Mapping[str, str] | Headers | None = None,
    ) -> None:
        if isinstance(status, bool) or not isinstance(status, int) or not 100 <= status <= 599:
            raise ValueError(f"invalid status code: {status!r}")
        self.status = status
        self.headers = Headers(headers or {})
        self.body = _to_bytes(body)
        if isinstance(body, str) and "content-type" not in self.headers:
            self.headers["content-type"] = "text/plain;charset=UTF-8"

    @classmethod
    def from_json(
        cls,
        data: Any,
        status: int = 200,
        headers: Mapping[str, str] | Headers | None = None,
    ) -> Response:
        resp = cls(json.dumps(data), status=status, headers=headers)
        resp.headers["content-type"] = "application/json"
        return resp

    @property
    def ok(self) -> bool:
        return 200 <= self.status <= 299

    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.text())

    def __repr__(self) -> str:
        return f"<Response [{self.status}]>"


class Console:
    """Collects handler output instead of writing to the worker's stdout."""

    def __init__(self, *, max_lines: int = MAX_CONSOLE_LINES) -> None:
        self.lines: list[str] = []
        self.max_lines = max_lines
        self.dropped = 0

    def _emit(self, level: str, args: tuple[Any, ...]) -> None:
        if len(self.lines) >= self.max_lines:
            self.dropped += 1
            return
        line = clean_text(" ".join(str(a) for a in args))
        if len(line) > MAX_CONSOLE_LINE_LEN:
            line = line[:MAX_CONSOLE_LINE_LEN]
        self.lines.append(f"[{level}] {line}")

    def log(self, *args: Any) -> None:
        self._emit("log", args)

    def info(self, *args: Any) -> None:
        self._emit("info", args)

    def warn(self, *args: Any) -> None:
        self._emit("warn", args)

    warning = warn

    def error(self, *args: Any) -> None:
        self._emit("error", args)

    def debug(self, *args: Any) -> None:
        self._emit("debug", args)

    def print(self, *args: Any, sep: str = " ", end: str = "\n", **_: Any) -> None:
        self._emit("log", (sep.join(str(a) for a in args),))


class Crypto:
    def random_uuid(self) -> str:
        return str(uuid.uuid4())

    def random_bytes(self, n: int = 16) -> bytes:
        n = int(n)
        if n < 0 or n > 65536:
            raise ValueError("random_bytes length must be between 0 and 65536")
        return secrets.token_bytes(n)

    def digest(self, algorithm: str, data: str | bytes) -> str:
        name = str(algorithm or "").replace("-", "").lower()
        if name not in {"sha1", "sha256", "sha384", "sha512", "md5"}:
            raise ValueError(f"unsupported digest algorithm: {algorithm}")
        return hashlib.new(name, _to_bytes(data)).hexdigest()


def make_fetch(*, allow: bool, timeout_seconds: float = 10.0):
    async def fetch(
        resource: str | URL | Request,
        *,
        method: str | None = None,
        headers: Mapping[str, str] | Headers | None = None,
        body: str | bytes | None = None,
        timeout: float | None = None,
    ) -> Response:
        if not allow:
            raise PermissionError("fetch is disabled in this sandbox")
        if isinstance(resource, Request):
            url = resource.url
            method = method or resource.method
            headers = headers if headers is not None else resource.headers
            body = body if body is not None else (resource.body or None)
        else:
            url = str(resource)
        async with httpx.AsyncClient(timeout=timeout or timeout_seconds, follow_redirects=True) as client:
            r = await client.request(
                (method or "GET").upper(),
                url,
                headers=headers,
                content=_to_bytes(body) if body is not None else None,
            )
        # httpx already decoded the transfer encoding; drop the headers that no longer apply.
        out_headers = Headers(r.headers)
        for k in ("content-encoding", "content-length", "transfer-encoding"):
            if k in out_headers:
                del out_headers[k]
        return Response(r.content, status=r.status_code, headers=out_headers)

    return fetch


def _restricted_import(name: str, globals=None, locals=None, fromlist=(), level: int = 0):  # noqa: A002
    if level != 0:
        raise ImportError("relative imports are not available to edge handlers")
    allowed = name in ALLOWED_MODULES
    if not allowed and name == "urllib" and fromlist:
        allowed = all(f"urllib.{item}" in ALLOWED_MODULES for item in fromlist)
    if not allowed:
        raise ImportError(f"module not available to edge handlers: {name}")
    return builtins.__import__(name, globals, locals, fromlist, level)


def build_globals(*, console: Console, allow_fetch: bool, fetch_timeout_seconds: float = 10.0) -> dict[str, Any]:
    safe = {name: getattr(builtins, name) for name in _SAFE_BUILTINS if hasattr(builtins, name)}
    safe["print"] = console.print
    safe["__import__"] = _restricted_import
    return {
        "__builtins__": safe,
        "__name__": "edge_handler",
        "Request": Request,
        "Response": Response,
        "Headers": Headers,
        "URL": URL,
        "fetch": make_fetch(allow=allow_fetch, timeout_seconds=fetch_timeout_seconds),
        "console": console,
        "crypto": Crypto(),
    }
