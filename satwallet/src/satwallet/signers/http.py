"""
HTTP bridge to a hardware signing device.

The bridge process drives the device and exposes one endpoint,
POST {url}/v1/sign, taking a SignRequest and returning a SignResponse.
A 4xx answer means the device or its user declined; anything else that is
not a valid response means the device is unavailable.
"""

from __future__ import annotations

import httpx
from loguru import logger

from satwallet.errors import SignerRefused, SignerUnavailable
from satwallet.signers.base import ExternalSigner, SignRequest, SignResponse


class HttpSigner(ExternalSigner):
    def __init__(
        self,
        url: str = "http://127.0.0.1:8335",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def sign(self, request: SignRequest) -> SignResponse:
        logger.info(
            f"Requesting signatures for {len(request.inputs)} input(s) from signer at {self.url}"
        )
        try:
            response = await self.client.post(f"{self.url}/v1/sign", json=request.model_dump())
            response.raise_for_status()
            return SignResponse.model_validate(response.json())

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if 400 <= status < 500:
                reason = _reason(e.response)
                logger.warning(f"Signer refused: {reason}")
                raise SignerRefused(reason) from e
            raise SignerUnavailable(f"Signer error (HTTP {status})") from e
        except httpx.HTTPError as e:
            raise SignerUnavailable(f"Signer unreachable: {e}") from e
        except ValueError as e:
            raise SignerUnavailable(f"Malformed signer response: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()


def _reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or "refused"
    if isinstance(body, dict) and body.get("reason"):
        return str(body["reason"])
    return str(body)
