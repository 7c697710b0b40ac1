from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from edge_registry import db as dbm
from edge_registry.settings import RegistrySettings
from edge_sandbox import SandboxConfig, SandboxResult
from edge_sandbox import run as sandbox_run


LOGGER = structlog.get_logger("edge-registry")

# Deploy smoke check: a bare GET against the handler's root.
SMOKE_REQUEST: dict[str, Any] = {"url": "/", "method": "GET", "headers": {}, "body": None}

SandboxRunner = Callable[..., Awaitable[SandboxResult]]


def to_record(kind: str, result: SandboxResult) -> dbm.ResultRecord:
    if result.ok:
        return dbm.ResultRecord(
            kind=kind,
            success=True,
            response={"status": result.status, "headers": dict(result.headers), "body": result.body},
            performance=result.performance(),
            logs=list(result.logs),
            timestamp=time.time(),
        )
    return dbm.ResultRecord(
        kind=kind,
        success=False,
        error=result.error,
        error_kind=result.error_kind,
        stack=result.stack,
        performance=result.performance(),
        logs=list(result.logs),
        timestamp=time.time(),
    )


@dataclass(frozen=True)
class DeployReport:
    result: SandboxResult
    handler: dict[str, Any] | None
    conflict: bool = False

    @property
    def deployed(self) -> bool:
        return self.result.ok and not self.conflict


class EdgeHandlerService:
    """
    Handler CRUD plus the deploy/test flows. Blocking sqlite work runs in threads;
    sandbox runs happen before any row is touched.
    """

    def __init__(self, settings: RegistrySettings, *, runner: SandboxRunner | None = None) -> None:
        self.settings = settings
        self._runner = runner or sandbox_run
        self._deploy_locks: dict[str, asyncio.Lock] = {}

    def sandbox_config(self) -> SandboxConfig:
        return self.settings.sandbox_config()

    async def list_handlers(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(dbm.list_handlers, self.settings)

    async def get_handler(self, handler_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(dbm.get_handler, self.settings, handler_id=handler_id)

    async def create_handler(
        self,
        *,
        name: str,
        code: str,
        pattern: str = "/*",
        handler_type: str = "request",
        regions: list[str] | None = None,
    ) -> dict[str, Any]:
        created = await asyncio.to_thread(
            dbm.insert_handler,
            self.settings,
            name=name,
            code=code,
            pattern=pattern,
            handler_type=handler_type,
            regions=regions,
        )
        LOGGER.info("handler_created", handler_id=created["id"], name=created["name"])
        return created

    async def update_handler(self, handler_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        # Edits wait for an in-flight deploy of the same handler.
        lock = self._deploy_locks.get(handler_id)
        if lock is None:
            ok = await asyncio.to_thread(dbm.update_handler, self.settings, handler_id=handler_id, patch=patch)
        else:
            async with lock:
                ok = await asyncio.to_thread(dbm.update_handler, self.settings, handler_id=handler_id, patch=patch)
        if not ok:
            return None
        return await self.get_handler(handler_id)

    async def delete_handler(self, handler_id: str) -> bool:
        ok = await asyncio.to_thread(dbm.delete_handler, self.settings, handler_id=handler_id)
        if ok:
            self._deploy_locks.pop(handler_id, None)
            LOGGER.info("handler_deleted", handler_id=handler_id)
        return ok

    async def list_test_results(self, handler_id: str, *, limit: int = 50) -> list[dict[str, Any]] | None:
        handler = await asyncio.to_thread(dbm.get_handler, self.settings, handler_id=handler_id, include_results=False)
        if handler is None:
            return None
        return await asyncio.to_thread(dbm.list_test_results, self.settings, handler_id=handler_id, limit=limit)

    async def deploy(self, handler_id: str) -> DeployReport | None:
        """
        Validate and smoke-run the stored code, then promote (active, version+1) or mark error.
        Returns None when the handler does not exist.
        """
        exists = await asyncio.to_thread(dbm.get_handler, self.settings, handler_id=handler_id, include_results=False)
        if exists is None:
            return None

        lock = self._deploy_locks.setdefault(handler_id, asyncio.Lock())
        async with lock:
            handler = await asyncio.to_thread(
                dbm.get_handler, self.settings, handler_id=handler_id, include_results=False
            )
            if handler is None:
                return None

            # run() performs the syntax validation before spawning a worker.
            result = await self._runner(str(handler["code"]), dict(SMOKE_REQUEST), config=self.sandbox_config())

            outcome = await asyncio.to_thread(
                dbm.complete_deploy,
                self.settings,
                handler_id=handler_id,
                expected_version=int(handler["version"]),
                result=to_record("deploy", result),
                expected_code=str(handler["code"]),
            )
            if outcome.conflict:
                LOGGER.warning("deploy_conflict", handler_id=handler_id, expected_version=handler["version"])
                return DeployReport(result=result, handler=None, conflict=True)
            if not outcome.updated:
                return None

            fresh = await asyncio.to_thread(dbm.get_handler, self.settings, handler_id=handler_id)
            if result.ok:
                LOGGER.info("deploy_succeeded", handler_id=handler_id, version=outcome.version)
            else:
                LOGGER.warning(
                    "deploy_failed",
                    handler_id=handler_id,
                    error_kind=result.error_kind,
                    error=result.error,
                )
            return DeployReport(result=result, handler=fresh)

    async def test(self, handler_id: str, request: dict[str, Any]) -> SandboxResult | None:
        """
        Run the stored code against `request` and append the outcome to the history.
        Never changes status or version. Returns None when the handler does not exist.
        """
        handler = await asyncio.to_thread(dbm.get_handler, self.settings, handler_id=handler_id, include_results=False)
        if handler is None:
            return None

        result = await self._runner(str(handler["code"]), dict(request), config=self.sandbox_config())

        recorded = await asyncio.to_thread(
            dbm.record_test_result,
            self.settings,
            handler_id=handler_id,
            result=to_record("test", result),
        )
        if not recorded:
            return None
        return result
