import time

import pytest

from trackerauth.service import validation
from trackerauth.service.validation import is_valid_email, is_valid_password


@pytest.mark.parametrize(
    "email",
    ["ada@example.com", "ADA.Lovelace+tracker@mail.example.co.uk", "a@b.io"],
)
async def test_valid_emails(email):
    assert await is_valid_email(email)


@pytest.mark.parametrize(
    "email",
    [
        "",
        "plainaddress",
        "@example.com",
        "ada@",
        "ada@example",
        "ada @example.com",
        "a@b@c.com",
        "a@b.com\n",
    ],
)
async def test_invalid_emails(email):
    assert not await is_valid_email(email)


async def test_overlong_email_is_rejected():
    assert not await is_valid_email("a" * 250 + "@example.com")


async def test_slow_match_counts_as_invalid(monkeypatch):
    def slow_match(email):
        time.sleep(0.5)
        return True

    monkeypatch.setattr(validation, "_match_email", slow_match)
    assert not await is_valid_email("ada@example.com", timeout=0.05)


@pytest.mark.parametrize(
    "password,expected",
    [("12345678", True), ("1234567", False), ("", False), (None, False)],
)
def test_password_length(password, expected):
    assert is_valid_password(password) is expected
