# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""JWT claim helpers for Codex OAuth tokens.

Payloads are decoded without signature verification. The claims are only
used to fill in account metadata (account id, email, expiry) that the token
endpoint does not return directly.
"""

import base64
import json
from typing import Any, Dict, Optional

AUTH_CLAIM = "https://api.openai.com/auth"
ACCOUNT_ID_CLAIM = "https://api.openai.com/auth.chatgpt_account_id"


def decode_jwt_unverified(token: str) -> Optional[Dict[str, Any]]:
    """Decode a JWT payload segment, or return None if it is not a JWT."""
    if not token or not isinstance(token, str):
        return None

    parts = token.split(".")
    if len(parts) < 2:
        return None

    payload_segment = parts[1]
    padding = "=" * (-len(payload_segment) % 4)

    try:
        payload_bytes = base64.urlsafe_b64decode(payload_segment + padding)
        payload = json.loads(payload_bytes.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None

    return payload if isinstance(payload, dict) else None


def extract_account_id_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the ChatGPT account id from the known claim locations."""
    if not payload:
        return None

    direct = payload.get(ACCOUNT_ID_CLAIM)
    if isinstance(direct, str) and direct.strip():
        return direct.strip()

    # Real tokens nest it under the auth claim object
    auth_claim = payload.get(AUTH_CLAIM)
    if isinstance(auth_claim, dict):
        nested = auth_claim.get("chatgpt_account_id")
        if isinstance(nested, str) and nested.strip():
            return nested.strip()

    orgs = payload.get("organizations")
    if isinstance(orgs, list) and orgs and isinstance(orgs[0], dict):
        org_id = orgs[0].get("id")
        if isinstance(org_id, str) and org_id.strip():
            return org_id.strip()

    return None


def extract_email_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the email claim, falling back to the subject."""
    if not payload:
        return None

    for key in ("email", "sub"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    return None


def extract_expiry_ms_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[int]:
    """Return the exp claim converted to epoch milliseconds."""
    if not payload:
        return None

    exp = payload.get("exp")
    if isinstance(exp, (int, float)):
        return int(float(exp) * 1000)

    return None


def account_id_from_token(access_token: str) -> Optional[str]:
    return extract_account_id_from_payload(decode_jwt_unverified(access_token))
