"""Identity anchor helpers: fingerprint composition and the minting client."""

import logging
from typing import Any, Mapping, Optional

import httpx

from trustcast.protocols import IdentityMintError
from trustcast.types import SessionContext

logger = logging.getLogger(__name__)

USER_AGENT = "trustcast/0.1 (identity-anchor)"


def build_fingerprint(context: SessionContext | Mapping[str, Any] | None) -> str:
    """Compose the order-stable client fingerprint for a session context.

    Only present components contribute; an empty context yields "unknown".
    """
    if not isinstance(context, SessionContext):
        context = SessionContext.from_mapping(context)
    parts = []
    if context.user_id:
        parts.append(f"user:{context.user_id}")
    if context.platform:
        parts.append(f"platform:{context.platform}")
    if context.fingerprint:
        parts.append(f"fp:{context.fingerprint}")
    if context.ip_hash:
        parts.append(f"ip:{context.ip_hash}")
    return "|".join(parts) or "unknown"


class HttpIdentityMinter:
    """Mints identity anchors through the external identity service.

    Any transport error, non-2xx answer or answer without an anchor raises
    IdentityMintError. No local anchor is ever generated.
    """

    MINT_PATH = "/api/v1/mint"

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def mint(self, entity_context: Mapping[str, Any]) -> str:
        payload = {
            "entity_type": "P",
            "characterization": "Synthetic",
            "classification": "internal",
            "metadata": dict(entity_context),
        }
        url = f"{self.base_url}{self.MINT_PATH}"
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=payload, headers=self._headers(), timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload, headers=self._headers())
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise IdentityMintError(
                f"Identity service rejected mint request: HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise IdentityMintError(f"Identity service unavailable: {e}") from e

        anchor = body.get("technical_id") or body.get("identity_anchor") or body.get("chitty_id")
        if not anchor:
            raise IdentityMintError("Identity service answered without an anchor")
        logger.debug(f"Minted identity anchor {anchor}")
        return str(anchor)
