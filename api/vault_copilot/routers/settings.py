"""
Settings router: chain type and model selection, index refresh and notices.

Changes go through the settings store; the chain manager rebuilds its
pipelines from the change notifications it is subscribed to.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from vault_copilot.core.errors import ConfigurationError, InitializationError
from vault_copilot.core.notices import NoticeBoard
from vault_copilot.models.settings import ChainType, ChainTypeUpdate, ModelUpdate, PluginSettings
from vault_copilot.routers.chat import get_chain_manager
from vault_copilot.services.chain_manager import ChainManager
from vault_copilot.services.settings_store import SettingsStore

router = APIRouter(tags=["settings"])


def get_settings_store(request: Request) -> SettingsStore:
    return request.app.state.settings_store


def get_notice_board(request: Request) -> NoticeBoard:
    return request.app.state.notices


def _active_state(manager: ChainManager) -> dict:
    chat_model = manager.chat_model_manager.get_chat_model()
    return {
        "chain_type": manager.active_chain_type.value,
        "model_key": chat_model.custom_model.key if chat_model else None,
    }


@router.get("/settings", response_model=PluginSettings)
async def read_settings(store: SettingsStore = Depends(get_settings_store)):
    return store.get()


@router.put("/settings/chain-type")
async def update_chain_type(
    body: ChainTypeUpdate,
    store: SettingsStore = Depends(get_settings_store),
    manager: ChainManager = Depends(get_chain_manager),
):
    """
    Switch the active chain.

    A switch that cannot be built (e.g. no embeddings configured) keeps the
    previous chain active; the response reports what is actually active.
    """
    try:
        chain_type = ChainType.from_string(body.chain_type)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    await store.update(chain_type=chain_type)
    return {"requested": chain_type.value, **_active_state(manager)}


@router.put("/settings/model")
async def update_model(
    body: ModelUpdate,
    store: SettingsStore = Depends(get_settings_store),
    manager: ChainManager = Depends(get_chain_manager),
):
    await store.update(model_key=body.model_key)
    return {"requested": body.model_key, **_active_state(manager)}


@router.post("/index/refresh")
async def refresh_index(manager: ChainManager = Depends(get_chain_manager)):
    """Rebuild the vault index and the active chain on top of it."""
    chunk_count = await manager.vector_store_manager.index_vault_to_vector_store()
    if manager.active_chain_type.uses_vault_index:
        try:
            await manager.set_chain(manager.active_chain_type)
        except InitializationError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return {"chunks": chunk_count}


@router.get("/notices")
async def read_notices(notices: NoticeBoard = Depends(get_notice_board)):
    """Notices posted since the last poll."""
    return [
        {"message": n.message, "created_at": n.created_at.isoformat()}
        for n in notices.drain()
    ]
