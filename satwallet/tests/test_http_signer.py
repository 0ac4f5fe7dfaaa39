"""
Tests for the HTTP signing bridge.
"""

from __future__ import annotations

import json

import httpx
import pytest

from satwallet.errors import SignerRefused, SignerUnavailable
from satwallet.signers.base import SignInput, SignOutput, SignRequest
from satwallet.signers.http import HttpSigner


@pytest.fixture
def request_model() -> SignRequest:
    return SignRequest(
        unsigned_tx="02000000",
        inputs=[
            SignInput(
                txid="ab" * 32,
                vout=1,
                amount=50_000,
                script="0014" + "11" * 20,
                script_code="76a914" + "11" * 20 + "88ac",
                derivation_path="m/84'/0'/0'/0/0",
            )
        ],
        outputs=[SignOutput(address="bc1qexample", amount=40_000)],
        fee=1_000,
    )


def _signer(handler) -> HttpSigner:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpSigner(url="http://signer:8335/", client=client)


class TestHttpSigner:
    @pytest.mark.asyncio
    async def test_signatures_returned(self, request_model):
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/sign"
            received.append(json.loads(request.content))
            return httpx.Response(
                200, json={"signatures": [{"index": 0, "signature": "3006020101020101" + "01"}]}
            )

        signer = _signer(handler)
        response = await signer.sign(request_model)
        await signer.close()

        assert response.signatures[0].index == 0
        assert response.signatures[0].pubkey is None
        assert received[0]["inputs"][0]["derivation_path"] == "m/84'/0'/0'/0/0"
        assert received[0]["fee"] == 1_000

    @pytest.mark.asyncio
    async def test_refused_with_reason(self, request_model):
        signer = _signer(lambda r: httpx.Response(403, json={"reason": "rejected on device"}))
        with pytest.raises(SignerRefused, match="rejected on device"):
            await signer.sign(request_model)

    @pytest.mark.asyncio
    async def test_refused_plain_text(self, request_model):
        signer = _signer(lambda r: httpx.Response(409, text="busy with another request"))
        with pytest.raises(SignerRefused, match="busy"):
            await signer.sign(request_model)

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self, request_model):
        signer = _signer(lambda r: httpx.Response(500))
        with pytest.raises(SignerUnavailable):
            await signer.sign(request_model)

    @pytest.mark.asyncio
    async def test_unreachable(self, request_model):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SignerUnavailable):
            await _signer(handler).sign(request_model)

    @pytest.mark.asyncio
    async def test_malformed_response(self, request_model):
        signer = _signer(lambda r: httpx.Response(200, json={"signatures": [{"index": -1}]}))
        with pytest.raises(SignerUnavailable):
            await signer.sign(request_model)

    @pytest.mark.asyncio
    async def test_non_json_response(self, request_model):
        signer = _signer(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(SignerUnavailable):
            await signer.sign(request_model)
