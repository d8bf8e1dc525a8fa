"""
Health router: GET /health endpoint.

Polled by the plugin before it opens the chat view.
"""

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """Return the service status and the active chain."""
    manager = request.app.state.chain_manager
    chat_model = manager.chat_model_manager.get_chat_model()
    return {
        "status": "healthy",
        "service": "vault-copilot",
        "chain_type": manager.active_chain_type.value,
        "model": chat_model.custom_model.key if chat_model else None,
    }
