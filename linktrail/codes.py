"""Short code generation and custom alias validation.

Random codes come from ``nanoid`` over an alphabet without look-alike
characters (``0 O o 1 l I``). Generated codes are checked against the Link
Store and regenerated on collision, up to a fixed number of attempts.

Custom aliases are caller-supplied; they are validated here for charset and
length, but uniqueness is decided by the Link Store's unique constraint.
"""

import re
from collections.abc import Awaitable, Callable

from nanoid import generate

from linktrail.config import get_settings
from linktrail.exceptions import GenerationExhausted, InvalidInput

__all__ = [
    "ALPHABET",
    "ALIAS_PATTERN",
    "RESERVED_ALIASES",
    "generate_short_code",
    "allocate_code",
    "validate_alias",
]

settings = get_settings()

ALPHABET = "23456789abcdefghijkmnpqrstuvwxyzABCDEFGHJKLMNPQRSTUVWXYZ"
ALIAS_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

# First path segments served by the app itself; an alias here could never redirect.
RESERVED_ALIASES = frozenset({"api", "docs", "redoc", "health", "metrics", "openapi"})


def generate_short_code(length: int = settings.SHORT_CODE_LENGTH) -> str:
    assert isinstance(length, int) and length > 0, f"length must be a positive integer, got {length!r}"
    return generate(ALPHABET, length)


async def allocate_code(
    exists: Callable[[str], Awaitable[bool]],
    length: int = settings.SHORT_CODE_LENGTH,
    max_attempts: int = settings.SHORT_CODE_MAX_ATTEMPTS,
) -> str:
    """Return a random code for which ``exists`` reports no collision.

    Raises:
        GenerationExhausted: every one of ``max_attempts`` candidates was taken.
    """
    for _ in range(max_attempts):
        candidate = generate_short_code(length)
        if candidate.lower() in RESERVED_ALIASES:
            continue
        if not await exists(candidate):
            return candidate
    raise GenerationExhausted(f"No free short code after {max_attempts} attempts")


def validate_alias(alias: str) -> str:
    if not settings.ALIAS_MIN_LENGTH <= len(alias) <= settings.ALIAS_MAX_LENGTH:
        raise InvalidInput(
            f"Custom alias must be between {settings.ALIAS_MIN_LENGTH} "
            f"and {settings.ALIAS_MAX_LENGTH} characters"
        )
    if not ALIAS_PATTERN.match(alias):
        raise InvalidInput("Custom alias can only contain letters, numbers, hyphens, and underscores")
    if alias.lower() in RESERVED_ALIASES:
        raise InvalidInput(f"Custom alias '{alias}' is reserved")
    return alias
