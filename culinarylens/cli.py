"""Command line interface for Culinary Lens."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Any, List

import httpx

from culinarylens.config import get_config
from culinarylens.pipeline import Orchestrator
from culinarylens.schema import DIETARY_OPTIONS, Capture, Ingredient, Preferences
from culinarylens.stages import ProgressEvent
from culinarylens.store import RUN_KINDS, RunStore


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2))


def _progress_printer(event: ProgressEvent) -> None:
    print(f"[culinarylens] {event.percent:3d}% {event.stage_id} {event.status} - {event.label}", file=sys.stderr)


def _listener(args: argparse.Namespace):
    return _progress_printer if getattr(args, "progress", False) else None


def _orchestrator() -> Orchestrator:
    return Orchestrator.from_config(get_config())


def _capture(args: argparse.Namespace) -> Capture:
    image = b""
    mime_type = "image/jpeg"
    if getattr(args, "image", None):
        path = Path(args.image)
        image = path.read_bytes()
        mime_type = mimetypes.guess_type(path.name)[0] or mime_type
    return Capture(image=image, mime_type=mime_type, labels=tuple(args.labels or ()))


def _load_inventory(path: str) -> tuple[List[Ingredient], dict]:
    """Accepts a bare ingredient list or ``{"ingredients": [...], "preferences": {...}}``."""
    data = json.loads(Path(path).read_text())
    prefs: dict = {}
    if isinstance(data, dict):
        prefs = data.get("preferences") or {}
        data = data.get("ingredients") or []
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of ingredients")
    items = [Ingredient.from_dict(item) for item in data if isinstance(item, dict)]
    return [item for item in items if item.name], prefs


def _preferences(args: argparse.Namespace, base: dict | None = None) -> Preferences:
    prefs = Preferences.from_dict(base or {})
    overrides: dict = prefs.to_dict()
    if getattr(args, "cuisine", None):
        overrides["cuisine"] = args.cuisine
    if getattr(args, "dietary", None):
        overrides["dietary"] = args.dietary
    if getattr(args, "allergy", None):
        overrides["allergies"] = list(prefs.allergies) + list(args.allergy)
    if getattr(args, "no_visuals", False):
        overrides["high_fidelity_visuals"] = False
    return Preferences.from_dict(overrides)


def cmd_health(args: argparse.Namespace) -> None:
    orchestrator = _orchestrator()
    _print(asyncio.run(orchestrator.check_health()))


def _server_url(args: argparse.Namespace) -> str:
    if getattr(args, "server", None):
        return args.server.rstrip("/")
    server = get_config().server
    host = server.get("host", "127.0.0.1")
    if host in ("0.0.0.0", "::"):
        host = "127.0.0.1"
    return f"http://{host}:{int(server.get('port', 8097))}"


def cmd_reset(args: argparse.Namespace) -> None:
    """Clear the failover latch of the session held by a running server."""
    url = f"{_server_url(args)}/api/failover/reset"
    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.post(url)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise SystemExit(f"failover reset via {url} failed: {exc}")
    _print(response.json())


def cmd_key(args: argparse.Namespace) -> None:
    orchestrator = _orchestrator()
    if args.key_cmd == "set":
        if orchestrator.credentials is None:
            raise SystemExit("no credential store configured")
        orchestrator.credentials.store(args.value)
        _print({"stored": True})
    elif args.key_cmd == "validate":
        valid = asyncio.run(orchestrator.validate_credentials(args.value))
        _print({"valid": valid})
        if not valid:
            raise SystemExit(1)


def cmd_perceive(args: argparse.Namespace) -> None:
    orchestrator = _orchestrator()
    report = asyncio.run(orchestrator.run_perception(_capture(args), listener=_listener(args)))
    _print(report.to_dict())


def cmd_synthesize(args: argparse.Namespace) -> None:
    orchestrator = _orchestrator()
    ingredients, prefs = _load_inventory(args.inventory)
    report = asyncio.run(
        orchestrator.run_synthesis(ingredients, _preferences(args, prefs), listener=_listener(args))
    )
    _print(report.to_dict())


async def _scan(orchestrator: Orchestrator, args: argparse.Namespace) -> dict:
    listener = _listener(args)
    perception = await orchestrator.run_perception(_capture(args), listener=listener)
    synthesis = await orchestrator.run_synthesis(perception.ingredients, _preferences(args), listener=listener)
    return {"perception": perception.to_dict(), "synthesis": synthesis.to_dict()}


def cmd_scan(args: argparse.Namespace) -> None:
    orchestrator = _orchestrator()
    _print(asyncio.run(_scan(orchestrator, args)))


def cmd_runs(args: argparse.Namespace) -> None:
    config = get_config()
    store = RunStore(config.data_dir)
    if args.runs_cmd == "latest":
        _print(store.latest(args.kind) or {})
    elif args.runs_cmd == "list":
        _print({"runs": store.list_runs(limit=args.limit, kind=args.kind)})


def _add_preference_args(cmd: argparse.ArgumentParser) -> None:
    cmd.add_argument("--cuisine")
    cmd.add_argument("--dietary", choices=list(DIETARY_OPTIONS))
    cmd.add_argument("--allergy", action="append")
    cmd.add_argument("--no-visuals", action="store_true")
    cmd.add_argument("--progress", action="store_true")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="culinarylens")
    parser.add_argument("--log-level", default="WARNING")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("health")
    reset = sub.add_parser("reset")
    reset.add_argument("--server", help="base URL of a running culinarylens server")

    key = sub.add_parser("key")
    key_sub = key.add_subparsers(dest="key_cmd")
    key_set = key_sub.add_parser("set")
    key_set.add_argument("value")
    key_validate = key_sub.add_parser("validate")
    key_validate.add_argument("value", nargs="?")

    perceive = sub.add_parser("perceive")
    perceive.add_argument("--labels", nargs="*", default=[])
    perceive.add_argument("--image")
    perceive.add_argument("--progress", action="store_true")

    synthesize = sub.add_parser("synthesize")
    synthesize.add_argument("--inventory", required=True)
    _add_preference_args(synthesize)

    scan = sub.add_parser("scan")
    scan.add_argument("--labels", nargs="*", default=[])
    scan.add_argument("--image")
    _add_preference_args(scan)

    runs = sub.add_parser("runs")
    runs_sub = runs.add_subparsers(dest="runs_cmd")
    latest = runs_sub.add_parser("latest")
    latest.add_argument("--kind", choices=list(RUN_KINDS))
    list_cmd = runs_sub.add_parser("list")
    list_cmd.add_argument("--limit", type=int, default=10)
    list_cmd.add_argument("--kind", choices=list(RUN_KINDS))

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if args.command == "health":
        cmd_health(args)
    elif args.command == "reset":
        cmd_reset(args)
    elif args.command == "key":
        cmd_key(args)
    elif args.command == "perceive":
        cmd_perceive(args)
    elif args.command == "synthesize":
        cmd_synthesize(args)
    elif args.command == "scan":
        cmd_scan(args)
    elif args.command == "runs":
        cmd_runs(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
