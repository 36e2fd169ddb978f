from __future__ import annotations

import json
from typing import Any

TOKEN_KEYS = ("token", "qrToken")


def normalize_token(raw_payload: str) -> str:
    """
    Extract the canonical ticket token from a decoded QR payload.

    Ticket QR codes carry either the bare opaque token or a small JSON object
    such as {"qrToken": "..."}; anything that is not a JSON object with one of
    those keys is returned unchanged. Never raises.
    """
    if not isinstance(raw_payload, str):
        return "" if raw_payload is None else str(raw_payload)
    text = raw_payload.strip()
    if not text.startswith("{"):
        return raw_payload
    try:
        data: Any = json.loads(text)
    except ValueError:
        return raw_payload
    if not isinstance(data, dict):
        return raw_payload
    for key in TOKEN_KEYS:
        value = data.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return raw_payload
