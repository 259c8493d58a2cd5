"""
Ledger-anchoring collaborator.

Anchoring is purely additive: a missing anchor never blocks or
invalidates a workflow transition.
"""
import hashlib
import logging
from typing import Optional

import httpx

from ... import config
from ...errors import CollaboratorUnavailable

logger = logging.getLogger(__name__)


class SimulatedAnchor:
    """
    Development anchor.
    Derives a deterministic transaction reference from the anchored values.
    """

    def anchor(self, evidence_id: str, content_hash: str, case_number: str) -> Optional[str]:
        digest = hashlib.sha256(f"{evidence_id}:{content_hash}:{case_number}".encode("utf-8")).hexdigest()
        tx_ref = f"0x{digest}"
        logger.info("Evidence %s anchored (simulated): %s", evidence_id, tx_ref)
        return tx_ref


class HttpAnchor:
    """Submits the anchor to an external ledger gateway."""

    def __init__(self, url: str, timeout: float = config.COLLABORATOR_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    def anchor(self, evidence_id: str, content_hash: str, case_number: str) -> Optional[str]:
        try:
            response = httpx.post(
                self.url,
                json={"evidence_id": evidence_id, "hash": content_hash, "case_number": case_number},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable(f"ledger anchor: {exc}") from exc
        return response.json().get("tx_hash")
