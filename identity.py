"""
Client for the external identity provider that owns end-user sign-in.

Speaks the Identity Toolkit admin REST API: accounts are created with
POST {base}/accounts and removed with POST {base}/accounts:delete.
ID tokens are resolved through POST {base}/accounts:lookup.
"""
import os
import logging
from typing import Optional

import requests

log = logging.getLogger("familytree-admin")

IDENTITY_PROJECT_ID = os.getenv("IDENTITY_PROJECT_ID", "")
IDENTITY_API_BASE = os.getenv("IDENTITY_API_BASE") or (
    f"https://identitytoolkit.googleapis.com/v1/projects/{IDENTITY_PROJECT_ID}" if IDENTITY_PROJECT_ID else ""
)
IDENTITY_API_TOKEN = os.getenv("IDENTITY_API_TOKEN", "")
IDENTITY_TIMEOUT = int(os.getenv("IDENTITY_TIMEOUT", "10"))


class IdentityError(RuntimeError):
    """The identity provider refused or failed a request."""

    pass


class IdentityNotConfigured(IdentityError):
    pass


def _post(path: str, body: dict) -> dict:
    if not IDENTITY_API_BASE or not IDENTITY_API_TOKEN:
        raise IdentityNotConfigured("Identity provider is not configured (IDENTITY_API_BASE / IDENTITY_API_TOKEN)")

    url = f"{IDENTITY_API_BASE.rstrip('/')}/{path}"
    try:
        response = requests.post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {IDENTITY_API_TOKEN}"},
            timeout=IDENTITY_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        log.error(f"Identity provider request to {path} failed: {e}")
        raise IdentityError(f"Identity provider unreachable: {e}") from e

    if response.status_code >= 400:
        log.error(f"Identity provider {path} answered {response.status_code}: {response.text}")
        raise IdentityError(_error_message(response))
    return response.json() if response.content else {}


def _error_message(response) -> str:
    try:
        message = (response.json().get("error") or {}).get("message")
    except ValueError:
        message = None
    return message or f"Identity provider error ({response.status_code})"


def create_account(email: str, password: str, display_name: Optional[str] = None) -> str:
    """Create a provider account and return its uid."""
    body = {"email": email, "password": password}
    if display_name:
        body["displayName"] = display_name
    result = _post("accounts", body)
    uid = result.get("localId")
    if not uid:
        raise IdentityError("Identity provider did not return an account id")
    log.info(f"Created identity account {uid} for {email}")
    return uid


def delete_account(uid: str):
    _post("accounts:delete", {"localId": uid})
    log.info(f"Deleted identity account {uid}")


def verify_id_token(id_token: str) -> str:
    """Resolve a signed-in user's ID token to their uid. Raises IdentityError when it is not valid."""
    result = _post("accounts:lookup", {"idToken": id_token})
    users = result.get("users") or []
    if not users or not users[0].get("localId"):
        raise IdentityError("Invalid ID token")
    return users[0]["localId"]
