import logging
from typing import Optional

import httpx

from api.models import Identity

logger = logging.getLogger(__name__)

LOOKUP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:lookup"


class IdentityError(Exception):
    pass


class IdentityVerifier:
    """Resolves a Firebase ID token to the signed-in user via the Identity Toolkit API."""

    def __init__(self, api_key: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def verify(self, id_token: str) -> Identity:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(LOOKUP_URL, params={"key": self.api_key}, json={"idToken": id_token})
        except httpx.HTTPError as e:
            raise IdentityError(f"identity lookup failed: {e}") from e
        if resp.status_code != 200:
            raise IdentityError(f"identity lookup rejected token ({resp.status_code})")
        try:
            data = resp.json()
        except ValueError as e:
            raise IdentityError("identity lookup returned invalid JSON") from e
        users = data.get("users") if isinstance(data, dict) else None
        user = users[0] if isinstance(users, list) and users else None
        if not isinstance(user, dict) or not isinstance(user.get("localId"), str) or not user["localId"]:
            raise IdentityError("identity lookup returned no user")

        providers = user.get("providerUserInfo")
        first = providers[0] if isinstance(providers, list) and providers else None
        if first is None:
            provider = "anonymous"
        elif isinstance(first, dict):
            provider = first.get("providerId")
        else:
            raise IdentityError("identity lookup returned malformed provider info")
        return Identity(uid=user["localId"], provider=provider if isinstance(provider, str) else None)
