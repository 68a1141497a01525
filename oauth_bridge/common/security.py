import base64
import hashlib
import hmac
import secrets
from typing import Optional, Tuple


def _s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_pair() -> Tuple[str, str]:
    """
    Generate a PKCE code verifier and its S256 challenge.

    Returns:
        (code_verifier, code_challenge)
    """
    code_verifier = secrets.token_urlsafe(64)
    return code_verifier, _s256(code_verifier)


def verify_pkce(
    code_verifier: str,
    code_challenge: str,
    code_challenge_method: Optional[str] = None,
) -> bool:
    """
    Check a PKCE verifier against the stored challenge.

    S256 compares base64url(sha256(verifier)) without padding; "plain" (or no
    method) compares the verifier itself. Both comparisons are constant-time.
    """
    if code_challenge_method == "S256":
        computed = _s256(code_verifier)
    else:
        computed = code_verifier

    return hmac.compare_digest(computed.encode("utf-8"), code_challenge.encode("utf-8"))
