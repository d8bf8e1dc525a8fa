"""
Chat router: streaming turns and transcript replay.

POST /chat streams the turn as NDJSON StreamEvents. When the client goes
away the turn is cancelled and nothing is committed to memory.
"""

from contextlib import aclosing

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from vault_copilot.core.cancellation import CancellationToken
from vault_copilot.models.chat import ChatMessage, ChatRequest, LoadHistoryRequest, Sender
from vault_copilot.services.chain_manager import ChainManager
from vault_copilot.services.chain_runner import RunChainOptions

router = APIRouter(tags=["chat"])


def get_chain_manager(request: Request) -> ChainManager:
    """
    Dependency injection for the chain manager.
    Initialized once in the lifespan handler and stored in app.state.
    """
    return request.app.state.chain_manager


@router.post("/chat")
async def chat(
    body: ChatRequest,
    manager: ChainManager = Depends(get_chain_manager),
) -> StreamingResponse:
    """
    Run one chat turn on the active chain.

    Each line of the response is a StreamEvent: `partial` events carry the
    answer so far, followed by one `final`, `error` or `cancelled` event.
    """
    user_message = ChatMessage(sender=Sender.USER, message=body.message)
    options = RunChainOptions(debug=body.debug, ignore_system_message=body.ignore_system_message)
    token = CancellationToken()

    async def events():
        async with aclosing(manager.stream_chain(user_message, token, options)) as stream:
            async for event in stream:
                yield event.model_dump_json() + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")


@router.post("/chat/history")
async def load_history(
    body: LoadHistoryRequest,
    manager: ChainManager = Depends(get_chain_manager),
):
    """Replace conversation memory with a saved transcript."""
    manager.update_memory_with_loaded_messages(body.messages)
    return {"turns": len(manager.memory_manager.get_memory())}


@router.delete("/chat/history")
async def clear_history(manager: ChainManager = Depends(get_chain_manager)):
    """Start a new conversation."""
    manager.memory_manager.clear_chat_memory()
    return {"turns": 0}
