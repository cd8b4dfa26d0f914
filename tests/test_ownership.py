"""Tests for the HTTP ownership oracle client."""

import httpx
import pytest

from app.gate.ownership import HttpOwnershipOracle, OwnershipLookupError

BASE_URL = "https://indexer.example"


def oracle_with(handler) -> HttpOwnershipOracle:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return HttpOwnershipOracle(client=client)


def chain(owners: dict, valid: dict):
    """Handler serving owner/validity for (contract, token) pairs."""

    def handler(request: httpx.Request) -> httpx.Response:
        _, _, contract, _, token, what = request.url.path.split("/")
        key = (contract, int(token))
        if key not in owners:
            return httpx.Response(404)
        if what == "owner":
            return httpx.Response(200, json={"owner": owners[key]})
        return httpx.Response(200, json={"valid": valid.get(key, True)})

    return handler


class TestHttpOwnershipOracle:

    @pytest.mark.asyncio
    async def test_current_owner(self):
        oracle = oracle_with(chain({("0xc0", 42): "0xabc"}, {}))
        assert await oracle.current_owner("0xc0", 42) == "0xabc"

    @pytest.mark.asyncio
    async def test_valid_ticket(self):
        oracle = oracle_with(chain({("0xc0", 42): "0xabc"}, {("0xc0", 42): True}))
        assert await oracle.is_ticket_valid("0xc0", 42) is True

    @pytest.mark.asyncio
    async def test_invalidated_ticket(self):
        oracle = oracle_with(chain({("0xc0", 42): "0xabc"}, {("0xc0", 42): False}))
        assert await oracle.is_ticket_valid("0xc0", 42) is False

    @pytest.mark.asyncio
    async def test_unknown_token(self):
        oracle = oracle_with(chain({}, {}))
        assert await oracle.current_owner("0xc0", 42) is None
        assert await oracle.is_ticket_valid("0xc0", 42) is False

    @pytest.mark.asyncio
    async def test_server_error_raises_lookup_error(self):
        oracle = oracle_with(lambda r: httpx.Response(502))
        with pytest.raises(OwnershipLookupError):
            await oracle.current_owner("0xc0", 42)

    @pytest.mark.asyncio
    async def test_timeout_raises_lookup_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow")

        with pytest.raises(OwnershipLookupError):
            await oracle_with(handler).is_ticket_valid("0xc0", 42)

    @pytest.mark.asyncio
    async def test_non_json_raises_lookup_error(self):
        oracle = oracle_with(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(OwnershipLookupError):
            await oracle.current_owner("0xc0", 42)

    @pytest.mark.asyncio
    async def test_wrong_types_raise_lookup_error(self):
        oracle = oracle_with(lambda r: httpx.Response(200, json={"owner": 5, "valid": "yes"}))
        with pytest.raises(OwnershipLookupError):
            await oracle.current_owner("0xc0", 42)
        with pytest.raises(OwnershipLookupError):
            await oracle.is_ticket_valid("0xc0", 42)
