"""FastAPI application entrypoint and REST/WebSocket surface.

Ingress routes acknowledge as soon as the input is authenticated, parsed and
published; decisions and actions complete in the background and show up in
the audit log, the pending queue, and the websocket stream.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, NoReturn, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .agent import AgentRegistry
from .config import settings
from .db import init_db, session_factory
from .domain import DecisionRecord, PendingDecision
from .errors import AgentError
from .inputs.base import InboundRequest, ProcessingResult
from .messaging import ConnectionManager
from .schemas import DecisionApprove, DecisionReject
from .store import AgentStore

ERROR_STATUS = {
    "AuthenticationError": 401,
    "ValidationError": 422,
    "QuotaExceededError": 429,
    "NotFoundError": 404,
    "InvalidStateError": 409,
    "ConflictError": 409,
}

ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    init_db()
    registry = AgentRegistry(AgentStore(session_factory))
    ws_manager.attach(registry.bus)
    app.state.registry = registry
    yield
    ws_manager.detach(registry.bus)
    await registry.shutdown()


app = FastAPI(title="Orchestration Agent", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_registry(request: Request) -> AgentRegistry:
    return request.app.state.registry


def _raise_for(exc: AgentError) -> NoReturn:
    raise HTTPException(status_code=ERROR_STATUS.get(type(exc).__name__, 400), detail=exc.to_dict())


def _ingress_response(result: ProcessingResult) -> dict[str, Any]:
    if not result.success:
        raise HTTPException(status_code=ERROR_STATUS.get(result.error_type or "", 400), detail=result.to_dict())
    return result.to_dict()


@app.post("/api/v1/orgs/{org_id}/webhooks/{endpoint}", status_code=202)
async def receive_webhook(org_id: str, endpoint: str, request: Request, registry=Depends(get_registry)):
    agent = await registry.get_or_create(org_id)
    body = await request.body()
    result = await agent.webhooks.handle_input(InboundRequest(body=body, headers=dict(request.headers), endpoint=endpoint))
    return _ingress_response(result)


@app.post("/api/v1/orgs/{org_id}/inbound-email", status_code=202)
async def receive_email(org_id: str, request: Request, registry=Depends(get_registry)):
    agent = await registry.get_or_create(org_id)
    body = await request.body()
    result = await agent.email.handle_input(InboundRequest(body=body, headers=dict(request.headers), endpoint="email"))
    return _ingress_response(result)


@app.post("/api/v1/orgs/{org_id}/worker-events", status_code=202)
async def receive_worker_event(org_id: str, payload: dict[str, Any] = Body(...), registry=Depends(get_registry)):
    agent = await registry.get_or_create(org_id)
    result = await agent.worker.handle_input(payload)
    return _ingress_response(result)


@app.get("/api/v1/orgs/{org_id}/decisions/pending")
async def list_pending(org_id: str, registry=Depends(get_registry)):
    agent = await registry.get_or_create(org_id)
    return [_serialize_pending(p) for p in agent.get_pending()]


@app.post("/api/v1/orgs/{org_id}/decisions/{decision_id}/approve")
async def approve_decision(org_id: str, decision_id: str, payload: DecisionApprove, registry=Depends(get_registry)):
    agent = await registry.get_or_create(org_id)
    try:
        record = await agent.approve(decision_id, payload.actor)
    except AgentError as exc:
        _raise_for(exc)
    return _serialize_record(record)


@app.post("/api/v1/orgs/{org_id}/decisions/{decision_id}/reject")
async def reject_decision(org_id: str, decision_id: str, payload: DecisionReject, registry=Depends(get_registry)):
    agent = await registry.get_or_create(org_id)
    try:
        record = await agent.reject(decision_id, payload.actor, payload.reason)
    except AgentError as exc:
        _raise_for(exc)
    return _serialize_record(record)


@app.post("/api/v1/orgs/{org_id}/decisions/{decision_id}/actions/{index}/retry")
async def retry_action(org_id: str, decision_id: str, index: int, registry=Depends(get_registry)):
    agent = await registry.get_or_create(org_id)
    try:
        result = await agent.retry_action(decision_id, index)
    except AgentError as exc:
        _raise_for(exc)
    return {"decision_id": decision_id, "index": index, "result": result.to_dict()}


@app.get("/api/v1/orgs/{org_id}/decisions")
async def list_decisions(
    org_id: str, state: Optional[str] = None, limit: int = 50, registry=Depends(get_registry)
):
    agent = await registry.get_or_create(org_id)
    return agent.get_history(state=state, limit=max(1, min(limit, 500)))


@app.post("/api/v1/orgs/{org_id}/sla/check")
async def check_sla(org_id: str, registry=Depends(get_registry)):
    agent = await registry.get_or_create(org_id)
    summary = await agent.sla.check_all()
    return summary.to_dict()


@app.get("/api/v1/orgs/{org_id}/stats")
async def org_stats(org_id: str, registry=Depends(get_registry)):
    agent = await registry.get_or_create(org_id)
    return agent.get_stats()


@app.get("/api/v1/events")
def list_events(
    event_name: Optional[str] = None,
    org_id: Optional[str] = None,
    limit: int = 100,
    registry=Depends(get_registry),
):
    return [e.to_dict() for e in registry.bus.history(event_name, org_id=org_id, limit=limit)]


@app.websocket("/ws/orgs/{org_id}/events")
async def org_events_ws(websocket: WebSocket, org_id: str):
    await ws_manager.connect(org_id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(org_id, websocket)


def _serialize_record(record: DecisionRecord) -> dict[str, Any]:
    return {"decision_id": record.decision_id, "state": record.state.value, "record": record.to_dict()}


def _serialize_pending(pending: PendingDecision) -> dict[str, Any]:
    return {
        **_serialize_record(pending.record),
        "expires_at": pending.expires_at.isoformat(),
        "created_at": pending.created_at.isoformat(),
    }


def run() -> None:
    uvicorn.run("opsagent.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
