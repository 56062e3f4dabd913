"""Deterministic license keys for paid checkout sessions."""

from __future__ import annotations

import hashlib
import hmac

LICENSE_PREFIX = "VRT"
_GROUPS = 4
_GROUP_SIZE = 5


def generate_license_key(session_id: str, secret: str) -> str:
    """Derive ``VRT-XXXXX-XXXXX-XXXXX-XXXXX`` from a checkout session id.

    The same session id always yields the same key, so repeated calls from
    the success page are safe.
    """
    digest = hmac.new(secret.encode("utf-8"), session_id.encode("utf-8"), hashlib.sha256).hexdigest()
    chars = digest.upper()[: _GROUPS * _GROUP_SIZE]
    groups = [chars[i : i + _GROUP_SIZE] for i in range(0, len(chars), _GROUP_SIZE)]
    return "-".join([LICENSE_PREFIX, *groups])
