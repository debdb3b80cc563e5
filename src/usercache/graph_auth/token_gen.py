"""Module for generating Microsoft Graph access tokens.

NOTE: This module only handles token generation (OAuth2 client credentials flow
against the Entra ID v2.0 endpoint). Token caching is handled by GraphTokenManager
in token_manager.py.
"""

import json
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Tuple

import requests

from usercache.errors import GraphAuthError

TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"


def get_graph_token(
    tenant_id: str,
    client_id: str,
    client_secret: str,
    exec_time_utc: datetime,
    timeout: float = 30.0,
) -> Tuple[str, datetime]:
    """
    Request an application access token for Microsoft Graph.

    Parameters
    ----------
    tenant_id : str
        Entra ID tenant ID
    client_id : str
        App registration client ID
    client_secret : str
        App registration client secret
    exec_time_utc : datetime
        Current execution time in UTC, used to compute the expiry
    timeout : float
        HTTP timeout in seconds

    Returns
    -------
    Tuple[str, datetime]
        access token and its expiry time (UTC)

    Raises
    ------
    GraphAuthError
        If token generation fails for any reason
    """
    url = TOKEN_URL_TEMPLATE.format(tenant_id=tenant_id)
    payload = {
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
        "scope": GRAPH_SCOPE,
    }

    try:
        response = requests.post(url, data=payload, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise GraphAuthError(f"Network error during token request: {e}") from e

    if response.status_code != 200:
        raise GraphAuthError(
            f"Token request failed with status {response.status_code}: {response.text}",
            status_code=response.status_code,
        )

    try:
        token_data = response.json()
    except json.JSONDecodeError as e:
        raise GraphAuthError(f"Failed to parse token response as JSON: {e}") from e

    access_token = token_data.get("access_token")
    expires_in = int(token_data.get("expires_in", 3600))

    if not access_token:
        raise GraphAuthError("Access token not found in response")

    return access_token, exec_time_utc.astimezone(timezone.utc) + timedelta(seconds=expires_in)
