"""FastAPI server for Culinary Lens.

One process serves one session: the failover latch lives on the
orchestrator created at startup and is cleared only through
``POST /api/failover/reset``.
"""
from __future__ import annotations

import base64
import binascii

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from culinarylens.config import get_config
from culinarylens.pipeline import Orchestrator
from culinarylens.schema import Capture, Ingredient, Preferences
from culinarylens.store import RunStore

app = FastAPI(title="Culinary Lens")


@app.on_event("startup")
def _startup() -> None:
    if getattr(app.state, "orchestrator", None) is not None:
        return
    config = get_config()
    app.state.config = config
    app.state.orchestrator = Orchestrator.from_config(config)
    app.state.store = RunStore(config.data_dir)


@app.get("/health")
async def health():
    """Liveness only; remote reachability is under /api/health."""
    return {"status": "healthy", "service": "culinarylens"}


@app.get("/api/health")
async def health_api(request: Request):
    return await request.app.state.orchestrator.check_health()


@app.post("/api/failover/reset")
async def failover_reset_api(request: Request):
    orchestrator = request.app.state.orchestrator
    changed = orchestrator.reset_failover("manual reset via api")
    snapshot = await orchestrator.check_health()
    return {"changed": changed, "reachable": snapshot["reachable"]}


@app.post("/api/perception")
async def perception_api(payload: dict, request: Request):
    labels = payload.get("labels") or []
    if not isinstance(labels, list):
        return JSONResponse({"error": "labels must be a list"}, status_code=400)
    image = b""
    if payload.get("image"):
        try:
            image = base64.b64decode(str(payload["image"]), validate=True)
        except (binascii.Error, ValueError):
            return JSONResponse({"error": "image must be base64"}, status_code=400)
    capture = Capture(
        image=image,
        mime_type=str(payload.get("mime_type") or "image/jpeg"),
        labels=tuple(str(label) for label in labels),
    )
    report = await request.app.state.orchestrator.run_perception(capture)
    return report.to_dict()


@app.post("/api/synthesis")
async def synthesis_api(payload: dict, request: Request):
    raw = payload.get("ingredients")
    if not isinstance(raw, list):
        return JSONResponse({"error": "ingredients must be a list"}, status_code=400)
    ingredients = [Ingredient.from_dict(item) for item in raw if isinstance(item, dict)]
    ingredients = [item for item in ingredients if item.name]
    prefs = payload.get("preferences") if isinstance(payload.get("preferences"), dict) else {}
    report = await request.app.state.orchestrator.run_synthesis(ingredients, Preferences.from_dict(prefs))
    return report.to_dict()


@app.post("/api/verification")
async def verification_api(payload: dict, request: Request):
    raw = payload.get("ingredient")
    if not isinstance(raw, dict):
        return JSONResponse({"error": "ingredient must be an object"}, status_code=400)
    ingredient = Ingredient.from_dict(raw)
    if not ingredient.name:
        return JSONResponse({"error": "ingredient needs a name"}, status_code=400)
    prefs = payload.get("preferences") if isinstance(payload.get("preferences"), dict) else {}
    try:
        updated, preferences = request.app.state.orchestrator.verify_ingredient(
            ingredient, str(payload.get("status") or ""), Preferences.from_dict(prefs)
        )
    except ValueError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    return {"ingredient": updated.to_dict(), "preferences": preferences.to_dict()}


@app.get("/api/audit")
async def audit_api(request: Request, limit: int = 50):
    audit = request.app.state.orchestrator.audit
    return {"events": audit.tail(limit) if audit else []}


@app.get("/api/runs")
async def runs_api(request: Request, limit: int = 20, kind: str | None = None):
    return {"runs": request.app.state.store.list_runs(limit=limit, kind=kind)}


@app.get("/api/runs/latest")
async def runs_latest_api(request: Request, kind: str | None = None):
    return request.app.state.store.latest(kind) or {}


@app.get("/api/runs/{run_id}")
async def run_detail_api(run_id: str, request: Request):
    run = request.app.state.store.get_run(run_id)
    if not run:
        return JSONResponse({"error": "not found"}, status_code=404)
    return run


def main():
    import uvicorn
    config = get_config()
    host = config.server.get("host", "127.0.0.1")
    port = int(config.server.get("port", 8097))
    uvicorn.run("culinarylens.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
