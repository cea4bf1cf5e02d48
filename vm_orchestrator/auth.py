import hashlib
import hmac


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def secure_compare_token(token: str, token_hash: str | None) -> bool:
    if not token_hash:
        return False
    return hmac.compare_digest(hash_token(token), token_hash)


def token_matches(token: str | None, expected: str | None) -> bool:
    """Constant-time check of a presented token against the configured one."""
    if not token or not expected:
        return False
    return secure_compare_token(token, hash_token(expected))
