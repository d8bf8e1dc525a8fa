"""
Rebuild the vault index from the command line.

Usage:
    vault-copilot-index --vault ~/Notes
    vault-copilot-index --embedding-model "text-embedding-3-large|openai"
"""

import argparse
import asyncio
import logging
from pathlib import Path

from vault_copilot.core.config import get_settings
from vault_copilot.core.events import EventBus
from vault_copilot.services.embeddings import EmbeddingsManager
from vault_copilot.services.settings_store import SettingsStore
from vault_copilot.services.vault import Vault
from vault_copilot.services.vector_store import VectorStoreManager

logger = logging.getLogger(__name__)


async def rebuild_index(
    vault_path: Path | None = None,
    index_path: Path | None = None,
    embedding_model_key: str | None = None,
) -> int:
    """Index every note of the vault and return the chunk count."""
    settings = get_settings()
    overrides = {}
    if vault_path is not None:
        overrides["vault_path"] = vault_path
    if index_path is not None:
        overrides["index_path"] = index_path
    if overrides:
        settings = settings.model_copy(update=overrides)

    store = SettingsStore.load(EventBus(), settings.settings_path)
    if embedding_model_key:
        await store.update(embedding_model_key=embedding_model_key)

    manager = VectorStoreManager(
        settings, Vault(settings.vault_path), EmbeddingsManager(settings, store)
    )
    return await manager.index_vault_to_vector_store()


def main():
    parser = argparse.ArgumentParser(
        description="Rebuild the Vault Copilot index from the notes in a vault"
    )
    parser.add_argument("--vault", type=Path, help="Vault root (default: VAULT_PATH)")
    parser.add_argument("--index", type=Path, help="Index file (default: INDEX_PATH)")
    parser.add_argument(
        "--embedding-model",
        help="Embedding model key name|provider; saved to the settings file",
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    count = asyncio.run(rebuild_index(args.vault, args.index, args.embedding_model))
    logger.info("Indexed %d chunks.", count)


if __name__ == "__main__":
    main()
