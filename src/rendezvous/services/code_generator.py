"""Short numeric codes for in-person verification.

Codes are social-proof tokens read aloud between two people, not account
secrets. They are drawn from the OS CSPRNG.
"""

import secrets

CODE_MIN = 1000
CODE_MAX = 9999


class CodeGenerator:
    """Mints 4-digit codes uniformly over 1000-9999."""

    def __init__(self, rng=None):
        self._rng = rng or secrets.SystemRandom()

    def generate(self) -> str:
        return str(self._rng.randint(CODE_MIN, CODE_MAX))


def codes_match(expected: str | None, submitted: str | None) -> bool:
    """Constant-time comparison; a missing code never matches."""
    if not expected or not submitted:
        return False
    return secrets.compare_digest(expected.encode(), submitted.encode())
