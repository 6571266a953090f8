"""Caller check for the /gate routes.

Every goal, selection and emergency command goes through this dependency, so
a client that cannot present the key cannot weaken the gate.
"""

from fastapi import HTTPException, Header

from haygate.config import settings


def _presented_key(x_api_key: str | None, authorization: str | None) -> str | None:
    if x_api_key is not None:
        return x_api_key
    if authorization and authorization.startswith("Bearer "):
        return authorization.removeprefix("Bearer ").strip()
    return None


async def verify_api_key(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None),
) -> str:
    """Accept X-API-Key or Authorization: Bearer; open when no api_key is configured."""
    if settings.api_key is None:
        return ""
    key = _presented_key(x_api_key, authorization)
    if key != settings.api_key:
        raise HTTPException(status_code=401, detail="Gate commands need a valid API key")
    return key
