from __future__ import annotations

import asyncio
import re
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .assets import Butler
from .commands import find_pattern
from .history import FailureStat, Rebuild, Run, RunIndex, RunSummary
from .models import AssetKind, Ecosystem, Target


class FindPayload(BaseModel):
    pattern: str
    failed_only: bool = True


def create_app(index: RunIndex, butler: Butler) -> FastAPI:
    app = FastAPI(title="Artifact Rebuilder Run Index")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def health():
        return {"status": "ok"}

    @app.get("/api/runs")
    def api_runs(limit: int = Query(50, le=500)) -> List[Run]:
        return index.runs(limit=limit)

    @app.get("/api/runs/{run_id}/rebuilds")
    def api_rebuilds(
        run_id: str,
        failed: bool = False,
        package: Optional[str] = None,
        limit: int = Query(0, ge=0, le=10000),
    ) -> List[Rebuild]:
        return index.rebuilds(run_id=run_id, failed_only=failed, package=package, limit=limit)

    @app.get("/api/runs/{run_id}/summary")
    def api_summary(run_id: str) -> RunSummary:
        return index.summary(run_id)

    @app.get("/api/top-failures")
    def api_top_failures(limit: int = Query(20, le=200), run_id: Optional[str] = None) -> List[FailureStat]:
        return index.top_failures(limit=limit, run_id=run_id)

    @app.post("/api/runs/{run_id}/find")
    async def api_find(run_id: str, payload: FindPayload):
        try:
            re.compile(payload.pattern)
        except re.error as exc:
            return JSONResponse(status_code=400, content={"detail": f"invalid pattern: {exc}"})
        rebuilds = index.rebuilds(run_id=run_id, failed_only=payload.failed_only)
        found = await asyncio.to_thread(find_pattern, rebuilds, payload.pattern, butler)
        return {"total": len(rebuilds), "matches": [rebuild.id for rebuild in found]}

    @app.get("/logs/{run_id}/{ecosystem}/{package}/{version}/{artifact}")
    def view_log(run_id: str, ecosystem: str, package: str, version: str, artifact: str):
        try:
            target = Target(ecosystem=Ecosystem(ecosystem), package=package, version=version, artifact=artifact)
        except ValueError:
            return JSONResponse(status_code=404, content={"detail": f"unknown ecosystem {ecosystem}"})
        try:
            path = butler.fetch(run_id, AssetKind.DEBUG_LOGS.for_target(target))
        except FileNotFoundError:
            return JSONResponse(status_code=404, content={"detail": "log not found"})
        return JSONResponse({"log_path": str(path), "content": path.read_text(errors="replace")})

    @app.exception_handler(Exception)
    async def handle_exceptions(request: Request, exc: Exception):
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    return app
