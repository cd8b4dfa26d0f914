"""Ownership oracle client.

Answers "who holds token N of contract C" and "is token N still a valid
ticket" from an authoritative chain indexer. Used only for the advisory
cross-check before redemption; the ledger remains the source of truth.

The HTTP oracle exposes:

    GET {base}/contracts/{contract_ref}/tokens/{ticket_id}/owner     -> {"owner": "0x..."}
    GET {base}/contracts/{contract_ref}/tokens/{ticket_id}/validity  -> {"valid": true}

404 means the token does not exist on chain.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# Default per-request timeout (seconds). Lower than ledger timeouts since the
# cross-check is an enhancement, not a requirement.
DEFAULT_ORACLE_TIMEOUT = 3.0


class OwnershipLookupError(Exception):
    """Raised when the oracle cannot give an answer."""

    pass


class OwnershipOracle(ABC):

    @abstractmethod
    async def current_owner(self, contract_ref: str, ticket_id: int) -> Optional[str]:
        """Address holding the token, or None if the token does not exist.

        Raises:
            OwnershipLookupError: Oracle unreachable or answered nonsense.
        """

    @abstractmethod
    async def is_ticket_valid(self, contract_ref: str, ticket_id: int) -> bool:
        """Whether the contract still considers the ticket valid.

        Raises:
            OwnershipLookupError: Oracle unreachable or answered nonsense.
        """


class HttpOwnershipOracle(OwnershipOracle):
    """Ownership oracle reached over HTTP.

    Args:
        base_url: Indexer root URL.
        timeout: Per-request timeout in seconds.
        client: Pre-built AsyncClient (tests inject a mock transport here).
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = DEFAULT_ORACLE_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str) -> Optional[dict]:
        try:
            response = await self._client.get(path)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            logger.warning(f"Ownership oracle timeout: {path}")
            raise OwnershipLookupError(f"timeout querying {path}")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Ownership oracle HTTP error for {path}: {e}")
            raise OwnershipLookupError(f"HTTP error querying {path}: {e}")
        except ValueError:
            raise OwnershipLookupError(f"invalid JSON from {path}")
        if not isinstance(data, dict):
            raise OwnershipLookupError(f"unexpected response shape from {path}")
        return data

    async def current_owner(self, contract_ref: str, ticket_id: int) -> Optional[str]:
        data = await self._get(f"/contracts/{contract_ref}/tokens/{ticket_id}/owner")
        if data is None:
            return None
        owner = data.get("owner")
        if owner is not None and not isinstance(owner, str):
            raise OwnershipLookupError("owner field is not a string")
        return owner

    async def is_ticket_valid(self, contract_ref: str, ticket_id: int) -> bool:
        data = await self._get(f"/contracts/{contract_ref}/tokens/{ticket_id}/validity")
        if data is None:
            return False
        valid = data.get("valid")
        if not isinstance(valid, bool):
            raise OwnershipLookupError("valid field is not a boolean")
        return valid
