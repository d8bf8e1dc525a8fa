"""
FastAPI application entrypoint.

Registers routers, configures CORS, initializes telemetry,
and wires the chat core on startup.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vault_copilot.core.config import get_settings
from vault_copilot.core.events import EventBus
from vault_copilot.core.notices import NoticeBoard
from vault_copilot.core.telemetry import setup_telemetry, shutdown_telemetry
from vault_copilot.models.settings import IndexStrategy
from vault_copilot.routers import chat, health, settings as settings_router
from vault_copilot.services.chain_manager import ChainManager
from vault_copilot.services.chat_models import ChatModelManager
from vault_copilot.services.embeddings import EmbeddingsManager
from vault_copilot.services.memory import MemoryManager
from vault_copilot.services.prompts import PromptManager
from vault_copilot.services.settings_store import SettingsStore
from vault_copilot.services.vault import Vault
from vault_copilot.services.vector_store import VectorStoreManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """
    Application lifespan handler.
    Builds the chat core on startup, unsubscribes it on shutdown.
    """
    settings = get_settings()

    # Configure logging
    logging.basicConfig(level=settings.log_level)

    # Initialize telemetry
    setup_telemetry(
        settings.applicationinsights_connection_string, console=settings.telemetry_console
    )

    bus = EventBus()
    store = SettingsStore.load(bus, settings.settings_path)
    notices = NoticeBoard()
    vector_store_manager = VectorStoreManager(
        settings, Vault(settings.vault_path), EmbeddingsManager(settings, store)
    )
    chain_manager = ChainManager(
        store,
        ChatModelManager(settings, store),
        MemoryManager(store),
        PromptManager(store),
        vector_store_manager,
        notices,
    )

    if store.get().index_vault_to_vector_store is IndexStrategy.ON_STARTUP:
        try:
            await vector_store_manager.index_vault_to_vector_store()
        except Exception:
            logger.exception("Indexing the vault on startup failed.")
            notices.notify("Indexing the vault on startup failed. See the logs for details.")

    await chain_manager.start()

    # Store in app state for dependency injection
    application.state.chain_manager = chain_manager
    application.state.settings_store = store
    application.state.notices = notices

    logger.info("Vault Copilot API started on vault %s.", settings.vault_path)
    yield
    chain_manager.close()
    shutdown_telemetry()
    logger.info("Vault Copilot API shutting down.")


app = FastAPI(
    title="Vault Copilot API",
    description="Chat backend for a note vault: plain chat, vault QA and agentic mode.",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(health.router)
app.include_router(chat.router)
app.include_router(settings_router.router)
