"""HTTP client for the remote generation-2 decoding service."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from cgmctl.core.config import DecodingConfig
from cgmctl.core.errors import DecodingServiceError
from cgmctl.core.model import Gen2Response

LOGGER = logging.getLogger(__name__)


class HTTPDecodingService:
    """Posts form-encoded requests to `<base_url>/<endpoint>` and parses `{p1, data}` replies."""

    def __init__(
        self,
        config: DecodingConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport

    async def nfc_auth(self, patch_uid: bytes, auth_data: bytes) -> Gen2Response:
        return await self._post(
            self.config.auth_endpoint,
            {"patchUid": patch_uid.hex(), "authData": auth_data.hex()},
        )

    async def nfc_data(self, patch_uid: bytes, auth_data: bytes) -> Gen2Response:
        return await self._post(
            self.config.data_endpoint,
            {"patchUid": patch_uid.hex(), "authData": auth_data.hex()},
        )

    async def nfc_data_algorithm(
        self,
        p1: int,
        auth_data: bytes,
        content: bytes,
        patch_uid: bytes,
        patch_info: bytes,
    ) -> Gen2Response:
        return await self._post(
            self.config.algorithm_endpoint,
            {
                "p1": str(p1),
                "authData": auth_data.hex(),
                "content": content.hex(),
                "patchUid": patch_uid.hex(),
                "patchInfo": patch_info.hex(),
            },
        )

    async def _post(self, endpoint: str, form: dict[str, str]) -> Gen2Response:
        url = f"{self.config.base_url}/{endpoint.lstrip('/')}"
        LOGGER.debug("OOP: posting to %s: %s", url, form)
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.post(url, data=form, timeout=self.config.timeout_s)
                resp.raise_for_status()
                body = resp.json()
        except httpx.TimeoutException as exc:
            raise DecodingServiceError(f"Decoding service timed out at {url}") from exc
        except httpx.HTTPStatusError as exc:
            raise DecodingServiceError(
                f"Decoding service replied {exc.response.status_code} at {url}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DecodingServiceError(f"Decoding service request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise DecodingServiceError(f"Decoding service reply from {url} is not JSON") from exc

        return _parse_response(body, url)


def _parse_response(body: Any, url: str) -> Gen2Response:
    if not isinstance(body, dict):
        raise DecodingServiceError(f"Decoding service reply from {url} must be an object")

    p1 = body.get("p1", 0)
    if not isinstance(p1, int) or isinstance(p1, bool):
        raise DecodingServiceError(f"Decoding service reply from {url} has a non-integer 'p1'")

    data = body.get("data", "")
    if isinstance(data, list):
        if not all(isinstance(b, int) and 0 <= b <= 0xFF for b in data):
            raise DecodingServiceError(f"Decoding service reply from {url} has invalid 'data' bytes")
        return Gen2Response(p1=p1, data=bytes(data))
    if not isinstance(data, str):
        raise DecodingServiceError(f"Decoding service reply from {url} has no 'data'")
    try:
        return Gen2Response(p1=p1, data=bytes.fromhex(data))
    except ValueError as exc:
        raise DecodingServiceError(f"Decoding service reply from {url} has non-hex 'data'") from exc
