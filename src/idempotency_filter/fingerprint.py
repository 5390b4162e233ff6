"""Request body fingerprinting.

The digest is stored alongside a cached response so that a later request
reusing the same key with a different body can be told apart. Mismatches
are recorded, not enforced.
"""

import hashlib


def compute_body_hash(body: bytes) -> str:
    """Compute the SHA-256 digest of a request body.

    Args:
        body: Request body as bytes

    Returns:
        Hexadecimal SHA-256 hash string (64 characters)

    Examples:
        >>> compute_body_hash(b"")
        'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
    """
    return hashlib.sha256(body).hexdigest()
