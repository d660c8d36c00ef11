"""Three-legged OAuth helpers for obtaining an APS access token."""

import logging
from typing import Any
from urllib.parse import urlencode

import requests

from .config import Config
from .errors import BackupError

logger = logging.getLogger(__name__)

SCOPES = ("data:read",)


def authorization_url(config: Config) -> str:
    """URL the user opens in a browser to grant access."""
    query = urlencode(
        {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.callback_url,
            "scope": " ".join(SCOPES),
        }
    )
    return f"{config.api_base_url}/authentication/v2/authorize?{query}"


def exchange_code(
    config: Config,
    code: str,
    session: requests.Session | None = None,
) -> dict[str, Any]:
    """
    Trade an authorization code for tokens.

    Returns the token response (``access_token``, ``refresh_token``,
    ``expires_in``, ...). Raises BackupError if the exchange fails.
    """
    http = session or requests.Session()
    try:
        response = http.post(
            f"{config.api_base_url}/authentication/v2/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": config.callback_url,
            },
            auth=(config.client_id, config.client_secret),
            timeout=config.request_timeout,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.error("Error exchanging code for token: %s", e)
        raise BackupError(f"Token exchange failed: {e}") from e

    if not payload.get("access_token"):
        raise BackupError("Token exchange returned no access token")
    return payload
