"""External system integrations"""

# Event Bus
from .event_bus import EventBus, Event

# Model clients
from .model_client import (
    ModelClient,
    ModelResponse,
    OpenAIModelClient,
    AnthropicModelClient,
    MockModelClient,
    ProviderRouter,
    RetryingModelClient,
    build_model_client
)

# Artifact store
from .artifact_store import ArtifactStore, InMemoryArtifactStore, MergeSummary

# Knowledge context
from .knowledge import ContextProvider, StaticContextProvider

__all__ = [
    # Event Bus
    "EventBus",
    "Event",

    # Model clients
    "ModelClient",
    "ModelResponse",
    "OpenAIModelClient",
    "AnthropicModelClient",
    "MockModelClient",
    "ProviderRouter",
    "RetryingModelClient",
    "build_model_client",

    # Artifact store
    "ArtifactStore",
    "InMemoryArtifactStore",
    "MergeSummary",

    # Knowledge context
    "ContextProvider",
    "StaticContextProvider"
]
