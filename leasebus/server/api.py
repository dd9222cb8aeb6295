import base64
import binascii
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from .registry import BrokerRegistry


class PublishRequest(BaseModel):
    payload: str  # base64


class ReceiveRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=1000)
    visibility_timeout: Optional[float] = Field(default=None, gt=0)


class ExtendRequest(BaseModel):
    duration: float = Field(ge=0)


class ReceivedMessage(BaseModel):
    message_id: str
    payload: str  # base64
    deadline_hint: float


class ReceiveResponse(BaseModel):
    messages: List[ReceivedMessage]


def create_app(registry: Optional[BrokerRegistry] = None) -> FastAPI:
    registry = registry or BrokerRegistry()
    app = FastAPI(title="leasebus broker")
    app.state.registry = registry

    @app.on_event("startup")
    async def startup_event():
        registry.start_reaper(interval=1.0)

    @app.on_event("shutdown")
    async def shutdown_event():
        await registry.stop_reaper()

    @app.post("/topics/{topic}/messages")
    async def publish(topic: str, request: PublishRequest):
        try:
            payload = base64.b64decode(request.payload, validate=True)
        except binascii.Error:
            raise HTTPException(status_code=422, detail="payload is not base64")
        message_id = await registry.get_broker().publish(topic, payload)
        return {"message_id": message_id}

    @app.post("/topics/{topic}/receive", response_model=ReceiveResponse)
    async def receive(topic: str, request: ReceiveRequest):
        broker = registry.get_broker()
        batch = await broker.receive_batch(
            topic, request.limit, request.visibility_timeout
        )
        hint = request.visibility_timeout or broker.visibility_timeout
        return ReceiveResponse(
            messages=[
                ReceivedMessage(
                    message_id=message.id,
                    payload=base64.b64encode(message.payload).decode("ascii"),
                    deadline_hint=hint,
                )
                for message in batch
            ]
        )

    @app.post("/messages/{message_id}/delete")
    async def delete(message_id: str):
        try:
            await registry.get_broker().delete(message_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown message {message_id}")
        return {"status": "deleted"}

    @app.post("/messages/{message_id}/extend")
    async def extend(message_id: str, request: ExtendRequest):
        try:
            await registry.get_broker().extend_visibility(message_id, request.duration)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown message {message_id}")
        return {"status": "extended"}

    @app.post("/messages/{message_id}/nack")
    async def nack(message_id: str):
        try:
            await registry.get_broker().make_visible_again(message_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown message {message_id}")
        return {"status": "visible"}

    return app


app = create_app()
