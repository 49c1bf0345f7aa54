"""
Session id signing.

The cookie carries "<session id>.<hex HMAC-SHA256(session id)>". Nothing else
about the session ever leaves the server.
"""

import hashlib
import hmac
import secrets


def generate_session_id() -> str:
    return secrets.token_hex(32)


def _signature(session_id: str, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), session_id.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def sign_session_id(session_id: str, secret: str) -> str:
    return f"{session_id}.{_signature(session_id, secret)}"


def verify_session_id(signed: str, secret: str) -> str | None:
    """Return the raw session id if the signature checks out, else None."""
    if not signed or signed.count(".") != 1:
        return None
    session_id, signature = signed.split(".")
    if not session_id or not signature:
        return None
    if not hmac.compare_digest(signature, _signature(session_id, secret)):
        return None
    return session_id
