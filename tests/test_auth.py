"""
Unit tests for cookie parsing, password checks and session tokens.
"""

from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

import pytest

from misub.auth import COOKIE_NAME, AuthManager, parse_cookies


@pytest.fixture(scope="module")
def auth_manager():
    return AuthManager("admin123", "unit-test-secret", session_days=7)


def _cookie_attrs(set_cookie: str) -> tuple[str, dict[str, str]]:
    first, *attrs = [part.strip() for part in set_cookie.split(";")]
    parsed = {}
    for attr in attrs:
        name, _, value = attr.partition("=")
        parsed[name] = value
    return first, parsed


# =============================================================================
# parse_cookies
# =============================================================================

def test_parse_cookies_splits_pairs_and_decodes_values():
    cookies = parse_cookies("theme=dark; auth_token=abc%20def ;lang=zh-CN")
    assert cookies == {"theme": "dark", "auth_token": "abc def", "lang": "zh-CN"}


def test_parse_cookies_keeps_equals_signs_in_value():
    assert parse_cookies("data=a=b==") == {"data": "a=b=="}


@pytest.mark.parametrize("header", [None, "", ";", " ; =orphan"])
def test_parse_cookies_empty_input(header):
    assert parse_cookies(header) == {}


# =============================================================================
# Passwords
# =============================================================================

def test_verify_password(auth_manager):
    assert auth_manager.is_configured()
    assert auth_manager.verify_password("admin123")
    assert not auth_manager.verify_password("admin1234")
    assert not auth_manager.verify_password("")
    assert not auth_manager.verify_password(None)
    assert not auth_manager.verify_password(123)


def test_unconfigured_password_rejects_everything():
    manager = AuthManager(None, "secret")
    assert not manager.is_configured()
    assert not manager.verify_password("")
    assert not manager.verify_password(None)


def test_overlong_admin_password_is_refused():
    with pytest.raises(ValueError):
        AuthManager("x" * 73, "secret")


# =============================================================================
# Tokens and cookies
# =============================================================================

def test_login_cookie_authenticates(auth_manager):
    set_cookie = auth_manager.create_auth_cookie()
    first, attrs = _cookie_attrs(set_cookie)

    assert first.startswith(f"{COOKIE_NAME}=")
    assert auth_manager.is_authenticated(first)
    assert attrs["Path"] == "/"
    assert "HttpOnly" in attrs
    assert attrs["SameSite"] == "Lax"


def test_login_cookie_expires_in_seven_days(auth_manager):
    now = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)
    _, attrs = _cookie_attrs(auth_manager.create_auth_cookie(now=now))
    assert parsedate_to_datetime(attrs["Expires"]) == now + timedelta(days=7)


def test_clear_cookie_has_zero_max_age(auth_manager):
    first, attrs = _cookie_attrs(auth_manager.clear_auth_cookie())
    assert first == f"{COOKIE_NAME}="
    assert attrs["Max-Age"] == "0"
    assert not auth_manager.is_authenticated(first)


def test_literal_cookie_value_is_not_trusted(auth_manager):
    assert not auth_manager.is_authenticated(f"{COOKIE_NAME}=authenticated")
    assert not auth_manager.is_authenticated(None)
    assert not auth_manager.is_authenticated("other=1")


def test_token_signed_with_other_secret_is_rejected(auth_manager):
    foreign = AuthManager("admin123", "another-secret").create_token()
    assert not auth_manager.verify_token(foreign)


def test_tampered_token_is_rejected(auth_manager):
    token = auth_manager.create_token()
    header, payload, signature = token.split(".")
    flipped = signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")
    assert not auth_manager.verify_token(f"{header}.{payload}.{flipped}")


def test_expired_token_is_rejected(auth_manager):
    issued = datetime.now(timezone.utc) - timedelta(days=8)
    assert not auth_manager.verify_token(auth_manager.create_token(now=issued))
    assert auth_manager.verify_token(auth_manager.create_token())


def test_missing_cookie_secret_still_issues_usable_tokens():
    manager = AuthManager("pw", None)
    assert manager.verify_token(manager.create_token())
