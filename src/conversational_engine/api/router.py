"""
HTTP surface of the engine.

'build_router' exposes a 'ConversationalEngineController' as a FastAPI router;
'create_app' builds a complete application from 'EngineSettings' with the
bundled in-memory storage and abort registry. Generation responses are
'application/jsonl' streams, one 'MessageUpdate' record per line.

Engine errors raised before a stream starts are mapped to HTTP statuses:
'ReferenceNotFoundError' -> 404, 'InvalidOperationError' -> 400.
"""

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from conversational_engine.config import EngineSettings
from conversational_engine.controller import ConversationalEngineController, ConversationInput, MessageInput
from conversational_engine.conversation_database.abort import InMemoryAbortRegistry
from conversational_engine.conversation_database.data_models.conversation import Conversation
from conversational_engine.conversation_database.in_memory import InMemoryConversationDatabase
from conversational_engine.exceptions import InvalidOperationError, ReferenceNotFoundError
from conversational_engine.llms.base import LLMMessage
from conversational_engine.tools.http import HttpToolServerRegistry


def build_router(controller: ConversationalEngineController) -> APIRouter:
    router = APIRouter(prefix="/conversation", tags=["Conversation"])

    @router.post("", response_model=Conversation)
    async def create_conversation(conversation_input: ConversationInput) -> Conversation:
        return await controller.create_conversation(conversation_input)

    @router.get("/{conversation_id}", response_model=Conversation)
    async def get_conversation(conversation_id: str) -> Conversation:
        return await controller.get_conversation_by_id(conversation_id)

    @router.delete("/{conversation_id}")
    async def delete_conversation(conversation_id: str) -> dict[str, bool]:
        return {"deleted": await controller.delete_conversation(conversation_id)}

    @router.post("/{conversation_id}")
    async def send_message(conversation_id: str, user_input: MessageInput) -> StreamingResponse:
        stream = await controller.process_new_message_stream(conversation_id, user_input)
        return StreamingResponse(
            stream,
            media_type="application/jsonl",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @router.post("/{conversation_id}/stop-generating")
    async def stop_generating(conversation_id: str) -> dict[str, bool]:
        await controller.stop_generating(conversation_id)
        return {"success": True}

    @router.delete("/{conversation_id}/message/{message_id}")
    async def delete_message(conversation_id: str, message_id: str) -> dict[str, list[str]]:
        return {"deleted": await controller.delete_message(conversation_id, message_id)}

    @router.get("/{conversation_id}/prompt/{message_id}")
    async def get_prompt(conversation_id: str, message_id: str) -> list[LLMMessage]:
        return await controller.get_prompt(conversation_id, message_id)

    return router


def bind_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ReferenceNotFoundError)
    async def reference_not_found(request: Request, exc: ReferenceNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidOperationError)
    async def invalid_operation(request: Request, exc: InvalidOperationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})


def create_app(
    settings: EngineSettings | None = None, controller: ConversationalEngineController | None = None
) -> FastAPI:
    if controller is None:
        settings = settings or EngineSettings.from_env()
        controller = ConversationalEngineController(
            conversation_db=InMemoryConversationDatabase(),
            abort_registry=InMemoryAbortRegistry(ttl_seconds=settings.abort_ttl_seconds),
            settings=settings,
            tool_registry=HttpToolServerRegistry(settings.tool_servers) if settings.tool_servers else None,
        )
    app = FastAPI(title="Conversational Engine")
    app.include_router(build_router(controller))
    bind_error_handlers(app)
    return app
