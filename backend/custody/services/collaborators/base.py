"""
Best-effort wrapper for external collaborators.

Notification, publication and anchoring never decide the outcome of a
custody operation. Any failure is logged and replaced with a fallback.
"""
import logging
from typing import Any, Callable, TypeVar

from ...errors import CollaboratorUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def best_effort(name: str, call: Callable[..., T], *args: Any, fallback: T = None, **kwargs: Any) -> T:
    """Invoke a collaborator call, downgrading every failure to a warning."""
    try:
        return call(*args, **kwargs)
    except CollaboratorUnavailable as exc:
        logger.warning("%s unavailable: %s", name, exc.message)
    except Exception as exc:
        logger.warning("%s failed: %s", name, exc)
    return fallback
