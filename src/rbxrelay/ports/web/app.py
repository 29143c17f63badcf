from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from ... import __version__
from ...contracts.v1 import ResultPost
from ...daemon.broadcast import BroadcastLogHandler
from ...daemon.core import RelayCore
from ...kernel.settings import SettingsStore
from .dashboard import DASHBOARD_HTML

logger = logging.getLogger("rbxrelay.web")


class SettingsUpdateRequest(BaseModel):
    autoAccept: Optional[bool] = None
    strictMode: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


class ApprovalDecisionRequest(BaseModel):
    approved: bool


def terminate_process() -> None:
    """Ask the server to exit (uvicorn handles SIGTERM as a graceful shutdown)."""
    os.kill(os.getpid(), signal.SIGTERM)


def _fatal(exc: BaseException) -> None:
    logger.critical(f"Fatal relay error, terminating: {exc!r}")
    terminate_process()


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None


def _parse_result_body(content_type: str, raw: bytes) -> Optional[ResultPost]:
    """Decode `POST /result`: `<id>\\n<output>` text, or JSON `{id, output}`."""
    text = raw.decode("utf-8", errors="replace")
    if "json" in content_type:
        try:
            doc = json.loads(text)
        except ValueError:
            doc = None
        if isinstance(doc, dict):
            try:
                return ResultPost.model_validate(doc)
            except PydanticValidationError as e:
                logger.warning(f"Malformed result post: {e.error_count()} invalid field(s)", extra={"op": "result"})
                return None
    if "\n" not in text:
        return None
    rid, output = text.split("\n", 1)
    return ResultPost(id=rid.strip(), output=output)


def create_app(core: Optional[RelayCore] = None) -> FastAPI:
    relay = core or RelayCore(SettingsStore(), on_fatal=_fatal)
    log_handler = BroadcastLogHandler(relay.broadcaster)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        relay_logger = logging.getLogger("rbxrelay")
        relay_logger.addHandler(log_handler)
        await relay.start()
        try:
            yield
        finally:
            await relay.stop()
            relay_logger.removeHandler(log_handler)

    app = FastAPI(title="rbxrelay", version=__version__, lifespan=lifespan)
    app.state.relay = relay

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.critical(f"Unhandled error in {request.method} {request.url.path}: {exc!r}", exc_info=exc)
        asyncio.get_running_loop().call_soon(relay.fatal, exc)
        return JSONResponse(status_code=500, content={"success": False, "error": "internal error"})

    # ------------------------------------------------------------------
    # Plugin endpoints
    # ------------------------------------------------------------------

    @app.get("/command")
    async def command(request: Request) -> Dict[str, Any]:
        cmd = await relay.pickup()
        if cmd is None:
            return {"tool": None}
        if await request.is_disconnected():
            relay.redeliver(cmd)
            return {"tool": None}
        return cmd.to_wire()

    @app.post("/result")
    async def result(request: Request) -> Dict[str, Any]:
        raw = await request.body()
        post = _parse_result_body(request.headers.get("content-type", ""), raw)
        if post is None or not post.id:
            logger.warning("Result post without a correlation id ignored", extra={"op": "result"})
        else:
            relay.post_result(post.id, post.output)
        return {"received": True}

    @app.get("/ping")
    async def ping() -> Dict[str, Any]:
        return {"pong": True}

    # ------------------------------------------------------------------
    # Dashboard / control
    # ------------------------------------------------------------------

    @app.get("/")
    async def index() -> RedirectResponse:
        return RedirectResponse(url="/gui")

    @app.get("/gui", response_class=HTMLResponse)
    async def gui() -> str:
        return DASHBOARD_HTML

    @app.get("/api/settings")
    async def get_settings() -> Dict[str, Any]:
        return relay.settings.snapshot()

    @app.put("/api/settings")
    async def put_settings(req: SettingsUpdateRequest) -> Dict[str, Any]:
        if req.autoAccept is not None:
            relay.gate.set_auto_accept(req.autoAccept)
        if req.strictMode is not None:
            relay.gate.set_strict_mode(req.strictMode)
        return relay.settings.snapshot()

    @app.post("/api/whitelist/{tool}")
    async def toggle_whitelist(tool: str) -> Dict[str, Any]:
        added = relay.gate.toggle_whitelist(tool)
        return {"tool": tool, "whitelisted": added, "whitelist": relay.settings.whitelist}

    @app.get("/api/approvals")
    async def approvals() -> Dict[str, Any]:
        return {"pending": [r.model_dump() for r in relay.gate.pending()]}

    @app.post("/api/approvals/{approval_id}")
    async def decide(approval_id: str, req: ApprovalDecisionRequest) -> Response:
        if not relay.gate.resolve(approval_id, req.approved):
            return JSONResponse(status_code=404, content={"error": "Approval request not found or already resolved"})
        return JSONResponse(content={"id": approval_id, "approved": req.approved})

    @app.post("/api/shutdown")
    async def shutdown() -> Dict[str, Any]:
        logger.info("Shutdown requested", extra={"op": "shutdown"})
        relay.accepting = False
        asyncio.get_running_loop().call_later(0.2, terminate_process)
        return {"shuttingDown": True}

    # ------------------------------------------------------------------
    # Legacy intake
    # ------------------------------------------------------------------

    @app.get("/api/status/{request_id}")
    async def legacy_status(request_id: str) -> Response:
        view = relay.legacy.status(request_id)
        if view is None:
            return JSONResponse(status_code=404, content={"error": "Request not found"})
        return JSONResponse(content=view)

    @app.get("/api/result/{request_id}")
    async def legacy_result(request_id: str) -> Response:
        view = relay.legacy.result(request_id)
        if view is None:
            return JSONResponse(status_code=404, content={"error": "Request not found"})
        return JSONResponse(content=view)

    @app.get("/api/queue")
    async def queue() -> Dict[str, Any]:
        return relay.queue_info()

    # ------------------------------------------------------------------
    # Tool calls (registered last: `{tool}` would shadow the routes above)
    # ------------------------------------------------------------------

    @app.post("/api/{tool}/direct")
    async def direct(tool: str, request: Request) -> Dict[str, Any]:
        args = await _read_json(request)
        res = await relay.execute(tool, args)
        body = res.to_response()
        if tool == "multi" and not res.success:
            body["output"] = res.output
        return body

    @app.post("/api/{tool}")
    async def legacy_submit(tool: str, request: Request) -> Dict[str, Any]:
        args = await _read_json(request)
        return relay.submit_legacy(tool, args)

    # ------------------------------------------------------------------
    # Broadcast channel
    # ------------------------------------------------------------------

    @app.websocket("/ws")
    async def ws(websocket: WebSocket) -> None:
        await websocket.accept()
        sub = relay.broadcaster.subscribe()

        async def _send(event: str, data: Any) -> None:
            await websocket.send_json({"event": event, "data": data})

        await _send("autoAcceptUpdate", relay.settings.auto_accept)
        await _send("strictModeUpdate", relay.settings.strict_mode)
        await _send("whitelistUpdate", relay.settings.whitelist)
        await _send("agentStatus", {"connected": relay.rendezvous.presence.is_online()})
        for pending in relay.gate.pending():
            await _send("approvalRequest", pending.model_dump())

        async def _pump_out() -> None:
            while True:
                msg = await sub.q.get()
                if msg is None:
                    break
                await websocket.send_json(msg)

        async def _pump_in() -> None:
            while True:
                try:
                    obj = json.loads(await websocket.receive_text())
                except ValueError:
                    continue
                if isinstance(obj, dict):
                    reply = handle_client_message(relay, obj)
                    if reply is not None:
                        await _send(*reply)

        out_task = asyncio.create_task(_pump_out())
        in_task = asyncio.create_task(_pump_in())
        try:
            done, pending_tasks = await asyncio.wait({out_task, in_task}, return_when=asyncio.FIRST_COMPLETED)
            for t in pending_tasks:
                t.cancel()
            await asyncio.gather(*pending_tasks, return_exceptions=True)
            for t in done:
                exc = t.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    raise exc
        finally:
            relay.broadcaster.unsubscribe(sub)

    return app


def handle_client_message(relay: RelayCore, msg: Dict[str, Any]) -> Optional[tuple]:
    """Apply one dashboard message. Returns an `(event, data)` reply for the sender, if any."""
    event = str(msg.get("event") or "")
    data = msg.get("data")
    gate = relay.gate

    if event == "toggleAutoAccept":
        gate.set_auto_accept(bool(data) if isinstance(data, bool) else not relay.settings.auto_accept)
    elif event in ("toggleStrictMode", "toggleStrictEditScript"):
        gate.set_strict_mode(bool(data) if isinstance(data, bool) else not relay.settings.strict_mode)
    elif event == "getWhitelist":
        return ("whitelistUpdate", relay.settings.whitelist)
    elif event == "toggleWhitelist":
        tool = data.get("tool") if isinstance(data, dict) else data
        if isinstance(tool, str) and tool:
            gate.toggle_whitelist(tool)
    elif event == "approvalResponse":
        if isinstance(data, dict) and data.get("id"):
            if not gate.resolve(str(data["id"]), bool(data.get("approved"))):
                logger.warning(f"Approval response for unknown request: {data['id']}")
    else:
        logger.debug(f"Ignoring dashboard message: {event!r}")
    return None
