"""
Ballot token generation.

A ballot token is the public receipt for a cast vote: a fixed prefix and an
uppercase base-36 suffix. Uniqueness is enforced by the votes table; callers
retry with a fresh token on collision.
"""

import hashlib
import re
import secrets
import time

from django.conf import settings

_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

BALLOT_TOKEN_RE = re.compile(r"VT-[A-Z0-9]{12}")


def generate_ballot_token() -> str:
    config = settings.VOTING_CONFIG
    seed = secrets.token_bytes(16) + time.time_ns().to_bytes(8, "big")
    value = int.from_bytes(hashlib.sha256(seed).digest(), "big")

    suffix = []
    for _ in range(config["BALLOT_TOKEN_LENGTH"]):
        value, index = divmod(value, len(_ALPHABET))
        suffix.append(_ALPHABET[index])
    return config["BALLOT_TOKEN_PREFIX"] + "".join(suffix)
