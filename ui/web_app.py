"""
ui/web_app.py — FastAPI HTTP boundary for Sentinel Guardian.

Exposes the stateless analysis endpoint used by remote clients, the manual
alert, and thin wrappers around the orchestrator. Live orchestrator events
are streamed to browsers over a WebSocket at /ws.

REST endpoints
--------------
POST /analyze-safety  One stateless analysis      {"user_text": ..., ...}
POST /manual-alert    Enter LOCKDOWN              {"latitude"?, "longitude"?}
POST /query           Submit a query              {"text": ...}
POST /confirm         Answer the CRITICAL prompt  {"approved": true|false}
POST /reset           Back to SAFE                {}
POST /audio-level     Feed the ambient meter      {"samples": [-1..1, ...]} | {"level": dB}
GET  /state           Orchestrator snapshot
GET  /health          JSON health check

WebSocket
---------
ws://<host>:<port>/ws

Messages pushed by server (JSON):
  {"type": "snapshot",     "state": "SAFE", ...}        ← on connect
  {"type": "state",        "from": "SAFE", "to": "CRITICAL", "reason": "..."}
  {"type": "log",          "type_": "SYSTEM", "message": "..."}
  {"type": "speaking",     "text": "..."}
  {"type": "confirmation", "message": "...", "risk_level": 8}
  {"type": "emergency",    "source": "manual", "latitude": ..., "longitude": ...}
  {"type": "fallback",     "reason": "...", "risk_level": 2}
"""

from __future__ import annotations

import asyncio
import json
import math
import random
import threading
from typing import Any, Dict, List, Optional, Set

import numpy as np
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from core.errors import GuardianError, MalformedResponseError
from core.logger import get_logger
from input.audio_level import AmbientAudioMonitor
from input.sensors import GeoFix
from llm.fallback import pick_fallback
from llm.prompt_builder import SafetyPayload
from pipeline.controller import (
    ON_CONFIRMATION_NEEDED,
    ON_EMERGENCY,
    ON_FALLBACK,
    ON_LOG,
    ON_SPEAKING,
    ON_STATE_CHANGE,
    GuardianController,
)

_log = get_logger()

FALLBACK_HEADER = "X-Guardian-Fallback"

# ── FastAPI app ───────────────────────────────────────────────────────────────
app = FastAPI(title="Sentinel Guardian", version="1.0")

# ── Shared state ──────────────────────────────────────────────────────────────
_controller: Optional[GuardianController] = None
_fallback_rng: Optional[random.Random] = None
_connected_clients: Set[WebSocket] = set()
_clients_lock = threading.Lock()


# ── WebSocket helpers ─────────────────────────────────────────────────────────

def _push(msg: Dict[str, Any]) -> None:
    """Schedule a JSON message to every connected WebSocket client."""
    if not _connected_clients:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    loop.create_task(_broadcast(msg))


async def _broadcast(msg: Dict[str, Any]) -> None:
    text = json.dumps(msg, default=str)
    with _clients_lock:
        clients = list(_connected_clients)
    dead: List[WebSocket] = []
    for ws in clients:
        try:
            await ws.send_text(text)
        except Exception:  # noqa: BLE001
            dead.append(ws)
    if dead:
        with _clients_lock:
            for ws in dead:
                _connected_clients.discard(ws)


# ── EventBus → WebSocket bridge ───────────────────────────────────────────────

def wire_controller(ctrl: GuardianController, rng: Optional[random.Random] = None) -> None:
    """
    Attach *ctrl* to the app and bridge its EventBus to the WS stream.

    Args:
        ctrl: The orchestrator serving this process.
        rng: Optional random source for ``/analyze-safety`` fallbacks.
    """
    global _controller, _fallback_rng
    _controller = ctrl
    _fallback_rng = rng

    ctrl.subscribe(ON_STATE_CHANGE, lambda d: _push({"type": "state", **d}))
    ctrl.subscribe(ON_LOG, lambda d: _push({"type": "log", "type_": d["type"],
                                            "message": d["message"], "at": d["at"]}))
    ctrl.subscribe(ON_SPEAKING, lambda d: _push({"type": "speaking", **d}))
    ctrl.subscribe(ON_CONFIRMATION_NEEDED, lambda d: _push({"type": "confirmation", **d}))
    ctrl.subscribe(ON_EMERGENCY, lambda d: _push({"type": "emergency", **d}))
    ctrl.subscribe(ON_FALLBACK, lambda d: _push({"type": "fallback", **d}))
    _log.info("web_app", "controller_wired", {})


def _not_ready() -> JSONResponse:
    return JSONResponse({"error": True, "message": "controller not ready"}, status_code=503)


def _optional_fix(body: Dict[str, Any]) -> Optional[GeoFix]:
    lat, lng = body.get("latitude"), body.get("longitude")
    if isinstance(lat, bool) or isinstance(lng, bool):
        return None
    if isinstance(lat, (int, float)) and isinstance(lng, (int, float)):
        return GeoFix(latitude=float(lat), longitude=float(lng))
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _feed_audio(monitor: AmbientAudioMonitor, body: Dict[str, Any]) -> float:
    """
    Update *monitor* from a client body and return the new level.

    ``samples`` (floats in [-1, 1]) wins over a pre-measured ``level``.

    Raises:
        ValueError: Neither field holds usable numbers.
    """
    samples = body.get("samples")
    if isinstance(samples, list) and samples and all(_is_number(s) for s in samples):
        return monitor.feed(np.asarray(samples, dtype=np.float64))
    level = body.get("level")
    if _is_number(level):
        return monitor.set_level(level)
    raise ValueError("samples (list of numbers) or level (number) is required")


# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health() -> JSONResponse:
    ctrl_ok = _controller is not None
    return JSONResponse({
        "status": "ok" if ctrl_ok else "controller_not_ready",
        "state": _controller.state.value if ctrl_ok else None,
        "clients": len(_connected_clients),
    })


@app.get("/state")
async def state() -> JSONResponse:
    if _controller is None:
        return _not_ready()
    return JSONResponse(_controller.snapshot())


@app.post("/analyze-safety")
async def analyze_safety(body: Dict[str, Any] = {}) -> JSONResponse:
    """
    Stateless analysis: validate the body, call the model, validate its output.

    A wholly failed remote call is answered with a canned reply (flagged with
    the ``X-Guardian-Fallback`` header) when ``gateway.fallback_enabled``;
    a malformed model answer is always a 500.
    """
    if _controller is None:
        return _not_ready()

    try:
        payload = SafetyPayload.model_validate(body)
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        _log.warn("web_app", "analyze_bad_request", {"errors": exc.error_count(), "fields": fields})
        if "user_text" in fields:
            message = "User query is required for analysis."
        else:
            message = f"Invalid request field(s): {', '.join(fields) or 'body'}."
        return JSONResponse({"error": True, "message": message}, status_code=400)

    request = payload.to_request()
    parts = _controller.prompt_builder.build_parts(request)

    try:
        raw_text = await _controller.gateway.call(parts)
    except Exception as exc:  # noqa: BLE001
        _log.error("web_app", "analyze_gateway_failed", {
            "error_type": type(exc).__name__,
            "error": str(exc),
        })
        if _controller.config.gateway.fallback_enabled:
            fallback = pick_fallback(str(exc) or type(exc).__name__, _fallback_rng)
            return JSONResponse(fallback.to_dict(), headers={FALLBACK_HEADER: "1"})
        message = exc.user_message if isinstance(exc, GuardianError) else str(exc)
        return JSONResponse({"error": True, "message": message}, status_code=500)

    try:
        result = _controller.validator.validate(raw_text)
    except MalformedResponseError as exc:
        return JSONResponse({"error": True, "message": exc.user_message}, status_code=500)

    _log.info("web_app", "analyze_ok", {"risk_level": result.risk_level})
    return JSONResponse(result.to_dict())


@app.post("/manual-alert")
async def manual_alert(body: Dict[str, Any] = {}) -> JSONResponse:
    if _controller is None:
        return _not_ready()
    triggered = await _controller.trigger_emergency(
        source="manual_alert", location=_optional_fix(body or {}),
    )
    return JSONResponse({
        "ok": True,
        "triggered": triggered,
        "state": _controller.state.value,
    })


@app.post("/query")
async def query(body: Dict[str, Any] = {}) -> JSONResponse:
    if _controller is None:
        return _not_ready()
    text = body.get("text")
    if not isinstance(text, str) or not text.strip():
        return JSONResponse({"error": True, "message": "text is required"}, status_code=400)
    analysed = await _controller.submit_query(text)
    return JSONResponse({
        "ok": True,
        "analysed": analysed,
        "state": _controller.state.value,
    })


@app.post("/confirm")
async def confirm(body: Dict[str, Any] = {}) -> JSONResponse:
    if _controller is None:
        return _not_ready()
    approved = bool(body.get("approved", True))
    triggered = await _controller.confirm_emergency(approved)
    return JSONResponse({
        "ok": True,
        "approved": approved,
        "triggered": triggered,
        "state": _controller.state.value,
    })


@app.post("/reset")
async def reset() -> JSONResponse:
    if _controller is None:
        return _not_ready()
    changed = _controller.reset()
    return JSONResponse({"ok": True, "changed": changed, "state": _controller.state.value})


@app.post("/audio-level")
async def audio_level(body: Dict[str, Any] = {}) -> JSONResponse:
    if _controller is None:
        return _not_ready()
    monitor = _controller.audio
    if monitor is None:
        return JSONResponse({"error": True, "message": "no audio monitor attached"}, status_code=409)
    try:
        level = _feed_audio(monitor, body or {})
    except ValueError as exc:
        return JSONResponse({"error": True, "message": str(exc)}, status_code=400)
    _log.debug("web_app", "audio_level", {"level": level})
    return JSONResponse({"ok": True, "level": level})


@app.post("/voice-input")
async def voice_input() -> JSONResponse:
    return JSONResponse({"error": "Use /analyze-safety for guardian queries."}, status_code=404)


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket) -> None:
    await ws.accept()
    with _clients_lock:
        _connected_clients.add(ws)

    snapshot = _controller.snapshot() if _controller is not None else {}
    await ws.send_text(json.dumps({"type": "snapshot", **snapshot}, default=str))
    _log.info("web_app", "ws_connected", {"total": len(_connected_clients)})

    try:
        while True:
            msg = await ws.receive_text()
            try:
                data = json.loads(msg)
            except json.JSONDecodeError:
                _log.warn("web_app", "ws_bad_message", {"preview": msg[:80]})
                continue
            await _handle_client_msg(data)
    except WebSocketDisconnect:
        pass
    finally:
        with _clients_lock:
            _connected_clients.discard(ws)
        _log.info("web_app", "ws_disconnected", {"total": len(_connected_clients)})


async def _handle_client_msg(data: Dict[str, Any]) -> None:
    """Handle incoming WS messages from the browser (transcript, confirm, emergency, reset, audio)."""
    if _controller is None or not isinstance(data, dict):
        return
    action = data.get("action")
    if action == "transcript":
        await _controller.handle_transcript(str(data.get("text", "")))
    elif action == "confirm":
        await _controller.confirm_emergency(True)
    elif action == "cancel":
        await _controller.confirm_emergency(False)
    elif action == "emergency":
        await _controller.trigger_emergency(source="ws")
    elif action == "reset":
        _controller.reset()
    elif action == "audio" and _controller.audio is not None:
        try:
            _feed_audio(_controller.audio, data)
        except ValueError as exc:
            _log.warn("web_app", "ws_bad_audio", {"error": str(exc)})


# ── Public launcher ───────────────────────────────────────────────────────────

def start_web_server(
    controller: GuardianController,
    host: str = "127.0.0.1",
    port: int = 5000,
) -> None:
    """
    Wire *controller* to the app and run uvicorn in the current thread.

    Blocking — returns when the server stops.

    Args:
        controller: Fully initialised :class:`~pipeline.controller.GuardianController`.
        host:       Bind address.
        port:       TCP port.
    """
    wire_controller(controller)

    import uvicorn  # type: ignore
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    _log.info("web_app", "server_start", {"host": host, "port": port})
    server.run()
