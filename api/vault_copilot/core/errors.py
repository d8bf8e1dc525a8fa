"""
Error taxonomy for the chat core.

Configuration errors are shown to the user and abort the operation,
initialization errors come from index / embeddings setup, and cancellation
is raised at suspension points once a turn has been aborted.
"""


class CopilotError(Exception):
    """Base class for all chat core errors."""


class ConfigurationError(CopilotError):
    """No usable chat model, unresolvable model key or missing chain type."""


class UnsupportedChainTypeError(ConfigurationError):
    def __init__(self, chain_type: object) -> None:
        super().__init__(f"Unsupported chain type: {chain_type}")
        self.chain_type = chain_type


class DuplicateModelError(ConfigurationError):
    """More than one configured model shares the same name|provider key."""

    def __init__(self, model_key: str, count: int) -> None:
        super().__init__(
            f"Model key {model_key!r} matches {count} configured models; "
            "model keys must be unique."
        )
        self.model_key = model_key


class InitializationError(CopilotError):
    """The document index or the embeddings API could not be prepared."""


class OperationCancelledError(CopilotError):
    """Raised at a suspension point after the turn was cancelled."""
