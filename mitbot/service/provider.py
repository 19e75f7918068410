from __future__ import annotations

from typing import Optional

import httpx

from mitbot.logging import get_logger
from mitbot.service.tokens import APIToken, TokenType

logger = get_logger(__name__)


class ProviderError(Exception):
    """The token-issuing service rejected a request or could not be reached."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class MITProvider:
    """HTTP client for the tunnel service that issues and revokes tokens.

    ``POST {base_url}/token`` with ``{key_id, type, ttl}`` issues a token (an
    empty ``key_id`` asks the service to pick one); ``DELETE
    {base_url}/token/{key_id}`` revokes it. A 404 on revoke means the key is
    already gone and is not an error.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def generate_token(self, key_id: str, token_type: TokenType, ttl: int) -> APIToken:
        client = await self._get_client()
        payload = {"key_id": key_id, "type": TokenType(token_type).value, "ttl": ttl}
        try:
            response = await client.post("/token", json=payload)
        except httpx.TimeoutException as exc:
            logger.error("provider_generate_timeout", key_id=key_id, error=str(exc))
            raise ProviderError("token service timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("provider_generate_transport_error", key_id=key_id, error=str(exc))
            raise ProviderError(f"failed to reach token service: {exc}") from exc

        if response.status_code not in (200, 201):
            logger.error(
                "provider_generate_rejected", key_id=key_id, status_code=response.status_code
            )
            raise ProviderError(
                f"failed to generate token, status code: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            issued = APIToken(
                key_id=str(data["key_id"]),
                token=str(data["token"]),
                token_type=TokenType(data.get("type", token_type)),
                ttl=int(data.get("ttl", ttl)),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderError(f"failed to decode token response: {exc}") from exc

        logger.info(
            "provider_token_generated",
            key_id=issued.key_id,
            token_type=issued.token_type.value,
            ttl=issued.ttl,
        )
        return issued

    async def revoke_token(self, key_id: str) -> None:
        client = await self._get_client()
        try:
            response = await client.delete(f"/token/{key_id}")
        except httpx.TimeoutException as exc:
            logger.error("provider_revoke_timeout", key_id=key_id, error=str(exc))
            raise ProviderError("token service timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("provider_revoke_transport_error", key_id=key_id, error=str(exc))
            raise ProviderError(f"failed to reach token service: {exc}") from exc

        if response.status_code == 404:
            logger.info("provider_revoke_already_gone", key_id=key_id)
            return
        if response.status_code not in (200, 204):
            logger.error(
                "provider_revoke_rejected", key_id=key_id, status_code=response.status_code
            )
            raise ProviderError(
                f"failed to revoke token, status code: {response.status_code}",
                status_code=response.status_code,
            )
        logger.info("provider_token_revoked", key_id=key_id)
