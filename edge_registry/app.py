from __future__ import annotations

import time
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Response
from fastapi.responses import JSONResponse

from edge_registry import db as dbm
from edge_registry.auth import require_api_token
from edge_registry.schema import CreateHandlerRequest, SandboxRequestBody, UpdateHandlerRequest
from edge_registry.service import SMOKE_REQUEST, EdgeHandlerService
from edge_registry.settings import RegistrySettings, load_settings


def create_app(settings: RegistrySettings | None = None, *, service: EdgeHandlerService | None = None) -> FastAPI:
    app = FastAPI(title="CloudDeck Edge Handler Registry", version="0.1.0")
    app.state.settings = settings or load_settings()
    app.state.service = service or EdgeHandlerService(app.state.settings)

    @app.on_event("startup")
    def _startup() -> None:
        dbm.ensure_schema(app.state.settings)

    def _svc() -> EdgeHandlerService:
        return app.state.service

    def _enforce_code_size(code: str | None) -> None:
        if code is None:
            return
        settings2: RegistrySettings = app.state.settings
        if len(code.encode("utf-8")) > int(settings2.max_code_bytes):
            raise HTTPException(status_code=413, detail="code_too_large")

    def _clean_name(name: str) -> str:
        s = str(name or "").strip()
        if not s:
            raise HTTPException(status_code=400, detail="invalid_name")
        return s

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "ts": time.time()}

    @app.get("/edge-handlers")
    async def api_list_handlers(_auth: None = Depends(require_api_token)) -> dict[str, Any]:
        handlers = await _svc().list_handlers()
        return {"ok": True, "handlers": handlers}

    @app.post("/edge-handlers", status_code=201)
    async def api_create_handler(
        _auth: None = Depends(require_api_token),
        req: CreateHandlerRequest | None = None,
    ) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        name = _clean_name(req.name)
        _enforce_code_size(req.code)
        try:
            created = await _svc().create_handler(
                name=name,
                code=req.code,
                pattern=req.pattern,
                handler_type=req.type,
                regions=list(req.regions),
            )
        except dbm.HandlerNameConflict as exc:
            raise HTTPException(status_code=409, detail="handler_name_exists") from exc
        return {"ok": True, "handler": created}

    @app.get("/edge-handlers/{handler_id}")
    async def api_get_handler(handler_id: str, _auth: None = Depends(require_api_token)) -> dict[str, Any]:
        handler = await _svc().get_handler(handler_id)
        if not handler:
            raise HTTPException(status_code=404, detail="not_found")
        return {"ok": True, "handler": handler}

    @app.put("/edge-handlers/{handler_id}")
    async def api_update_handler(
        handler_id: str,
        _auth: None = Depends(require_api_token),
        req: UpdateHandlerRequest | None = None,
    ) -> dict[str, Any]:
        if req is None:
            raise HTTPException(status_code=400, detail="missing_body")
        patch: dict[str, Any] = req.model_dump(exclude_unset=True)
        if patch.get("name") is not None:
            patch["name"] = _clean_name(patch["name"])
        _enforce_code_size(patch.get("code"))
        try:
            handler = await _svc().update_handler(handler_id, patch)
        except dbm.HandlerNameConflict as exc:
            raise HTTPException(status_code=409, detail="handler_name_exists") from exc
        if not handler:
            raise HTTPException(status_code=404, detail="not_found")
        return {"ok": True, "handler": handler}

    @app.delete("/edge-handlers/{handler_id}", status_code=204)
    async def api_delete_handler(handler_id: str, _auth: None = Depends(require_api_token)) -> Response:
        ok = await _svc().delete_handler(handler_id)
        if not ok:
            raise HTTPException(status_code=404, detail="not_found")
        return Response(status_code=204)

    @app.post("/edge-handlers/{handler_id}/deploy")
    async def api_deploy_handler(handler_id: str, _auth: None = Depends(require_api_token)) -> Any:
        report = await _svc().deploy(handler_id)
        if report is None:
            raise HTTPException(status_code=404, detail="not_found")
        if report.conflict:
            raise HTTPException(status_code=409, detail="deploy_conflict")
        result = report.result
        if not report.deployed:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": result.error,
                    "error_kind": result.error_kind,
                    "stack": result.stack or "",
                    "handler": report.handler,
                    "result": result.to_dict(),
                },
            )
        return {"ok": True, "handler": report.handler, "result": result.to_dict()}

    @app.post("/edge-handlers/{handler_id}/test")
    async def api_test_handler(
        handler_id: str,
        _auth: None = Depends(require_api_token),
        req: SandboxRequestBody | None = None,
    ) -> dict[str, Any]:
        request = req.model_dump() if req is not None else dict(SMOKE_REQUEST)
        result = await _svc().test(handler_id, request)
        if result is None:
            raise HTTPException(status_code=404, detail="not_found")
        # A failing handler is still a successful test call.
        return {"ok": True, "result": result.to_dict(), "performance": result.performance()}

    @app.get("/edge-handlers/{handler_id}/test-results")
    async def api_list_test_results(
        handler_id: str,
        limit: int = 50,
        _auth: None = Depends(require_api_token),
    ) -> dict[str, Any]:
        results = await _svc().list_test_results(handler_id, limit=limit)
        if results is None:
            raise HTTPException(status_code=404, detail="not_found")
        return {"ok": True, "test_results": results}

    return app


app = create_app()
