#!/usr/bin/env python3
"""
HASHCHAIN Ledger Client
Submits accepted-candidate blocks to the external ledger service.
"""

from dataclasses import dataclass
from enum import Enum
import logging

import requests

import config

logger = logging.getLogger(__name__)


class SubmitStatus(Enum):
    """Outcome of a block submission."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class SubmitResult:
    status: SubmitStatus
    reason: str = ''

    @property
    def accepted(self) -> bool:
        return self.status is SubmitStatus.ACCEPTED

    @classmethod
    def ok(cls) -> 'SubmitResult':
        return cls(SubmitStatus.ACCEPTED)

    @classmethod
    def rejected(cls, reason: str) -> 'SubmitResult':
        return cls(SubmitStatus.REJECTED, reason)

    @classmethod
    def transport_error(cls, reason: str) -> 'SubmitResult':
        return cls(SubmitStatus.TRANSPORT_ERROR, reason)


class LedgerClient:
    """Submit blocks to a ledger service over HTTP."""

    def __init__(self, url: str, timeout: float = config.SUBMIT_TIMEOUT, session=None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests

    def submit(self, previous_hash: str, identity: str, nonce: str) -> SubmitResult:
        """
        Submit a block.

        Args:
            previous_hash: Hash the block extends
            identity: Miner identity
            nonce: Winning nonce

        Returns:
            SubmitResult (ACCEPTED, REJECTED with reason, or TRANSPORT_ERROR)
        """
        payload = {'previousHash': previous_hash, 'identity': identity, 'nonce': str(nonce)}

        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Submit transport error: {e}")
            return SubmitResult.transport_error(str(e))

        if resp.status_code >= 500:
            return SubmitResult.transport_error(f"HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            if resp.status_code >= 400:
                return SubmitResult.rejected(f"HTTP {resp.status_code}")
            return SubmitResult.transport_error(f"Invalid JSON response (HTTP {resp.status_code})")

        if not isinstance(data, dict):
            data = {}

        if resp.status_code >= 400:
            return SubmitResult.rejected(str(data.get('error') or f"HTTP {resp.status_code}"))

        if data.get('success') or data.get('accepted'):
            return SubmitResult.ok()
        return SubmitResult.rejected(str(data.get('error') or 'rejected'))


class OfflineSubmitter:
    """Accepts every block locally; used when no ledger service is configured."""

    def submit(self, previous_hash: str, identity: str, nonce: str) -> SubmitResult:
        return SubmitResult.ok()


def create_submitter(url: str = config.SUBMIT_URL, timeout: float = config.SUBMIT_TIMEOUT):
    """LedgerClient for a URL, OfflineSubmitter when url is empty."""
    if url:
        return LedgerClient(url, timeout=timeout)
    return OfflineSubmitter()
