"""FastAPI endpoints for session creation, item claims and live updates."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Any, Literal

from fastapi import Depends, FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import BackendSettings, load_settings
from .errors import BillSplitError, NotFoundError, SessionNotFound, TransientStoreError, ValidationError
from .gateway import SessionGateway
from .models import NewItem, SuggestedFix, VerificationIssue
from .notifier import QueueChannel, SessionNotifier
from .state import build_snapshot
from .store import create_store

logger = logging.getLogger(__name__)

IssueKind = Literal["unit_price_mismatch", "sum_mismatch", "suspicious_quantity"]


class CreateSessionRequest(BaseModel):
    image_url: str | None = Field(default=None, alias="imageUrl", max_length=2000)


class CreateSessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")


class SuggestedFixPayload(BaseModel):
    price: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    quantity: float | None = Field(default=None, ge=1, allow_inf_nan=False)


class VerificationIssuePayload(BaseModel):
    kind: IssueKind
    message: str = Field(min_length=1, max_length=1000)
    suggested_fix: SuggestedFixPayload | None = Field(default=None, alias="suggestedFix")

    def to_issue(self) -> VerificationIssue:
        fix = None
        if self.suggested_fix is not None:
            fix = SuggestedFix(price=self.suggested_fix.price, quantity=self.suggested_fix.quantity)
        return VerificationIssue(kind=self.kind, message=self.message, suggested_fix=fix)


class ItemPayload(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    unit_price: float = Field(alias="unitPrice", ge=0, allow_inf_nan=False)
    quantity: float = Field(gt=0, allow_inf_nan=False)
    verification_issue: VerificationIssuePayload | None = Field(default=None, alias="verificationIssue")


class AddItemsRequest(BaseModel):
    items: list[ItemPayload] = Field(min_length=1)


class JoinSessionRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class AssignQuantityRequest(BaseModel):
    item_id: str = Field(alias="itemId", min_length=1)
    participant_id: str = Field(alias="participantId", min_length=1)
    quantity: float = Field(allow_inf_nan=False)


class UpdateItemRequest(BaseModel):
    name: str | None = Field(default=None, max_length=200)
    price: float | None = Field(default=None, allow_inf_nan=False)
    quantity: float | None = Field(default=None, allow_inf_nan=False)


class VerificationRequest(BaseModel):
    issue: VerificationIssuePayload | None = None


def format_sse(message: dict[str, Any]) -> str:
    return f"data: {json.dumps(message)}\n\n"


def _error_response(status_code: int, exc: BillSplitError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": exc.message, "details": exc.details},
    )


def create_app(gateway: SessionGateway | None = None, settings: BackendSettings | None = None) -> FastAPI:
    settings = settings if settings is not None else load_settings()
    if gateway is None:
        store = create_store(
            database_url=settings.database_url,
            ttl_seconds=settings.session_ttl_seconds,
            timeout_seconds=settings.store_timeout_seconds,
        )
        gateway = SessionGateway(
            store=store,
            notifier=SessionNotifier(send_timeout_seconds=settings.send_timeout_seconds),
            store_timeout_seconds=settings.store_timeout_seconds,
        )
    session_gateway = gateway

    async def sweep_expired_sessions() -> None:
        while True:
            await asyncio.sleep(settings.sweep_interval_seconds)
            try:
                await session_gateway.expire_sessions()
            except TransientStoreError as exc:
                logger.warning("Expiry sweep skipped: %s", exc.message)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(sweep_expired_sessions())
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper

    app = FastAPI(title="Bill Split API", version="0.1.0", lifespan=lifespan)
    app.state.gateway = session_gateway

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(422, exc)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(404, exc)

    @app.exception_handler(TransientStoreError)
    async def transient_error_handler(request: Request, exc: TransientStoreError) -> JSONResponse:
        return _error_response(503, exc)

    def get_gateway() -> SessionGateway:
        return session_gateway

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/sessions", response_model=CreateSessionResponse, response_model_by_alias=True)
    async def create_session(
        payload: CreateSessionRequest | None = None,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> CreateSessionResponse:
        image_url = payload.image_url if payload is not None else None
        session = await local_gateway.create_session(image_url=image_url)
        return CreateSessionResponse(session_id=session.id)

    @app.get("/api/sessions/{session_id}")
    async def get_session(
        session_id: str,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        return await local_gateway.get_snapshot(session_id)

    @app.delete("/api/sessions/{session_id}", status_code=204)
    async def delete_session(
        session_id: str,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> Response:
        await local_gateway.delete_session(session_id)
        return Response(status_code=204)

    @app.post("/api/sessions/{session_id}/items")
    async def add_items(
        session_id: str,
        payload: AddItemsRequest,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        items = [
            NewItem(
                name=item.name,
                unit_price=item.unit_price,
                quantity=item.quantity,
                verification_issue=item.verification_issue.to_issue() if item.verification_issue else None,
            )
            for item in payload.items
        ]
        session = await local_gateway.add_items(session_id, items)
        return build_snapshot(session)

    @app.post("/api/sessions/{session_id}/participants")
    async def join_session(
        session_id: str,
        payload: JoinSessionRequest,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        participant, session = await local_gateway.join_session(session_id, payload.name)
        return {"participantId": participant.id, **build_snapshot(session)}

    @app.post("/api/sessions/{session_id}/assignments")
    async def assign_quantity(
        session_id: str,
        payload: AssignQuantityRequest,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        session = await local_gateway.assign_quantity(
            session_id, payload.item_id, payload.participant_id, payload.quantity
        )
        return build_snapshot(session)

    @app.post("/api/sessions/{session_id}/items/{item_id}")
    async def update_item(
        session_id: str,
        item_id: str,
        payload: UpdateItemRequest,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        session = await local_gateway.update_item(
            session_id, item_id, name=payload.name, price=payload.price, quantity=payload.quantity
        )
        return build_snapshot(session)

    @app.post("/api/sessions/{session_id}/items/{item_id}/fix")
    async def apply_suggested_fix(
        session_id: str,
        item_id: str,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        return build_snapshot(await local_gateway.apply_suggested_fix(session_id, item_id))

    @app.post("/api/sessions/{session_id}/items/{item_id}/dismiss")
    async def dismiss_issue(
        session_id: str,
        item_id: str,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        return build_snapshot(await local_gateway.dismiss_issue(session_id, item_id))

    @app.put("/api/sessions/{session_id}/items/{item_id}/verification")
    async def set_verification_issue(
        session_id: str,
        item_id: str,
        payload: VerificationRequest,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> dict[str, Any]:
        issue = payload.issue.to_issue() if payload.issue is not None else None
        return build_snapshot(await local_gateway.set_verification_issue(session_id, item_id, issue))

    @app.get("/api/sessions/{session_id}/events")
    async def session_events(
        session_id: str,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> StreamingResponse:
        channel = QueueChannel(maxsize=settings.subscriber_queue_size)
        handle = await local_gateway.subscribe(session_id, channel)

        async def event_stream() -> AsyncIterator[str]:
            try:
                async for message in channel.messages():
                    yield format_sse(message)
            finally:
                local_gateway.unsubscribe(handle)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.websocket("/ws/sessions/{session_id}")
    async def session_ws(
        websocket: WebSocket,
        session_id: str,
        local_gateway: SessionGateway = Depends(get_gateway),
    ) -> None:
        try:
            await local_gateway.get_session(session_id)
        except SessionNotFound:
            await websocket.close(code=1008)
            return

        await websocket.accept()
        channel = QueueChannel(maxsize=settings.subscriber_queue_size)
        try:
            handle = await local_gateway.subscribe(session_id, channel)
        except SessionNotFound:
            await websocket.close(code=1008)
            return

        async def write_snapshots() -> None:
            try:
                await channel.pipe_to(websocket.send_json)
                # The channel only ends once the server has dropped this subscriber.
                await websocket.close(code=1000)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.debug("Websocket writer for session %s stopped: %s", session_id, exc)

        writer = asyncio.create_task(write_snapshots())
        try:
            while True:
                await websocket.receive_text()
        except (WebSocketDisconnect, RuntimeError):
            pass
        finally:
            local_gateway.unsubscribe(handle)
            await channel.close()
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer

    return app


app = create_app()
