# Security utilities

import hashlib

CHALLENGE_SIZE = 32
DIGEST_SIZE = 16


def challenge_digest(challenge: bytes, secret: str) -> bytes:
    """Digest the node expects back for an admin registration challenge.

    The secret is spliced between the two halves of the challenge so the
    response cannot be replayed for a different challenge.
    """
    if len(challenge) != CHALLENGE_SIZE:
        raise ValueError(f"challenge must be {CHALLENGE_SIZE} bytes, got {len(challenge)}")
    half = CHALLENGE_SIZE // 2
    return hashlib.md5(challenge[:half] + secret.encode() + challenge[half:]).digest()

