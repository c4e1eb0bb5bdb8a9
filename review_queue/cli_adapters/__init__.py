"""CLI adapter module for interfacing with coding agent CLIs.

Adapters describe how to invoke an agent: executable lookup, argv for a
request, prompt delivery and recovering the final message from stdout.
"""

from review_queue.cli_adapters.base import (
    AgentRequest,
    CLIAdapter,
    CLIResult,
    CLIStatus,
    find_npm_executable,
)
from review_queue.cli_adapters.codex import CodexAdapter

__all__ = [
    # Base classes and types
    "AgentRequest",
    "CLIAdapter",
    "CLIResult",
    "CLIStatus",
    "find_npm_executable",
    # Adapters
    "CodexAdapter",
    # Factory functions
    "get_adapter",
]


def get_adapter(cli_name: str) -> CLIAdapter:
    """
    Get a CLI adapter by name.

    Raises:
        ValueError: If CLI name is not recognized.
    """
    adapters = {
        "codex": CodexAdapter,
    }

    adapter_class = adapters.get(cli_name.lower())
    if adapter_class is None:
        raise ValueError(f"Unknown CLI: {cli_name}. Available: {list(adapters.keys())}")

    return adapter_class()
