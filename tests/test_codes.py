"""Unit tests for short code generation and alias validation."""

from unittest.mock import AsyncMock

import pytest

from linktrail.codes import ALPHABET, allocate_code, generate_short_code, validate_alias
from linktrail.exceptions import GenerationExhausted, InvalidInput


def test_generated_code_length_and_alphabet() -> None:
    for _ in range(200):
        code = generate_short_code(7)
        assert len(code) == 7
        assert set(code) <= set(ALPHABET)


def test_alphabet_has_no_lookalikes() -> None:
    assert not set("0Oo1lI") & set(ALPHABET)


def test_generated_codes_are_distinct() -> None:
    codes = {generate_short_code() for _ in range(1000)}
    assert len(codes) == 1000


@pytest.mark.asyncio
async def test_allocate_code_retries_on_collision() -> None:
    exists = AsyncMock(side_effect=[True, True, False])
    code = await allocate_code(exists, length=6, max_attempts=5)
    assert len(code) == 6
    assert exists.await_count == 3


@pytest.mark.asyncio
async def test_allocate_code_gives_up() -> None:
    exists = AsyncMock(return_value=True)
    with pytest.raises(GenerationExhausted):
        await allocate_code(exists, max_attempts=4)
    assert exists.await_count == 4


@pytest.mark.parametrize("alias", ["promo1", "my-link", "snake_case", "ABCD", "a" * 15])
def test_valid_aliases(alias: str) -> None:
    assert validate_alias(alias) == alias


@pytest.mark.parametrize("alias", ["abc", "a" * 16, "has space", "emoji🙂", "dot.ted"])
def test_invalid_aliases(alias: str) -> None:
    with pytest.raises(InvalidInput):
        validate_alias(alias)


@pytest.mark.parametrize("alias", ["docs", "redoc", "health", "metrics", "Metrics", "OpenAPI"])
def test_reserved_aliases_rejected(alias: str) -> None:
    with pytest.raises(InvalidInput, match="reserved"):
        validate_alias(alias)


@pytest.mark.asyncio
async def test_allocate_code_skips_reserved_words(monkeypatch: pytest.MonkeyPatch) -> None:
    candidates = iter(["docs", "Health", "abc2345"])
    monkeypatch.setattr("linktrail.codes.generate_short_code", lambda length: next(candidates))
    exists = AsyncMock(return_value=False)

    assert await allocate_code(exists, length=7, max_attempts=5) == "abc2345"
    exists.assert_awaited_once_with("abc2345")
