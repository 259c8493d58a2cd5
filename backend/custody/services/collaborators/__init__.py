"""External collaborators: notification, content storage, anchoring, classification."""
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from ... import config
from .anchoring import HttpAnchor, SimulatedAnchor
from .base import best_effort
from .classifier import ExtensionClassifier
from .notifications import LoggingNotifier, WebhookNotifier
from .storage import NullStorage, PinningStorage


@dataclass
class Collaborators:
    notifier: Any
    storage: Any
    anchor: Any
    classifier: Any


def build_collaborators() -> Collaborators:
    """Choose collaborator implementations from configuration."""
    notifier = WebhookNotifier(config.NOTIFY_WEBHOOK_URL) if config.NOTIFY_WEBHOOK_URL else LoggingNotifier()
    storage = PinningStorage(config.PINNING_API_URL, config.PINNING_JWT) if config.PINNING_API_URL else NullStorage()
    anchor = HttpAnchor(config.ANCHOR_API_URL) if config.ANCHOR_API_URL else SimulatedAnchor()
    return Collaborators(notifier=notifier, storage=storage, anchor=anchor, classifier=ExtensionClassifier())


@lru_cache()
def get_collaborators() -> Collaborators:
    """Dependency for FastAPI - process-wide collaborator set."""
    return build_collaborators()


__all__ = [
    "Collaborators", "build_collaborators", "get_collaborators", "best_effort",
    "LoggingNotifier", "WebhookNotifier", "NullStorage", "PinningStorage",
    "SimulatedAnchor", "HttpAnchor", "ExtensionClassifier",
]
