from __future__ import annotations

import pytest

from apprun.core.credentials import Credential
from apprun.core.errors import ScopeMismatchError, TokenError, TokenExpiredError
from apprun.core.tokens import TokenMinter

from conftest import FakeClock


CREDENTIAL = Credential(provider="openai", source="platform", secret="sk-platform")


def test_mint_respects_ttl_and_deadline():
    clock = FakeClock()
    minter = TokenMinter(60, clock=clock)
    token = minter.mint("run_1", "openai.chat", CREDENTIAL)
    assert token.expires_at == clock.now + 60
    assert token.scope == "openai.chat"
    short = minter.mint("run_1", "openai.chat", CREDENTIAL, deadline=clock.now + 5)
    assert short.expires_at == clock.now + 5
    assert token.token_id != short.token_id


def test_token_repr_hides_secret():
    token = TokenMinter(clock=FakeClock()).mint("run_1", "openai.chat", CREDENTIAL)
    assert "sk-platform" not in repr(token)
    assert "sk-platform" not in str(token.describe())
    assert token.secret == "sk-platform"


def test_check_rejects_wrong_scope_expiry_and_closed_run():
    clock = FakeClock()
    minter = TokenMinter(60, clock=clock)
    token = minter.mint("run_1", "openai.chat", CREDENTIAL)
    minter.check(token, "openai.chat")
    with pytest.raises(ScopeMismatchError):
        minter.check(token, "email.send")
    minter.close_run("run_1")
    with pytest.raises(TokenExpiredError):
        minter.check(token, "openai.chat")

    other = minter.mint("run_2", "openai.chat", CREDENTIAL)
    clock.advance(61)
    with pytest.raises(TokenExpiredError):
        minter.check(other, "openai.chat")


def test_bearer_round_trip_and_tamper_detection():
    clock = FakeClock()
    minter = TokenMinter(60, signing_key=b"k" * 32, clock=clock)
    token = minter.mint("run_1", "openai.chat", CREDENTIAL)
    bearer = minter.to_bearer(token)
    assert "sk-platform" not in bearer
    claims = minter.verify_bearer(bearer, "openai.chat")
    assert claims["sub"] == "run_1"
    assert claims["jti"] == token.token_id

    with pytest.raises(ScopeMismatchError):
        minter.verify_bearer(bearer, "email.send")
    head, payload, _ = bearer.split(".")
    with pytest.raises(TokenError):
        minter.verify_bearer(f"{head}.{payload}.AAAA", "openai.chat")
    with pytest.raises(TokenError):
        minter.verify_bearer("not-a-token", "openai.chat")


def test_bearer_rejected_after_run_closes():
    clock = FakeClock()
    minter = TokenMinter(60, clock=clock)
    bearer = minter.to_bearer(minter.mint("run_1", "openai.chat", CREDENTIAL))
    minter.close_run("run_1")
    with pytest.raises(TokenExpiredError):
        minter.verify_bearer(bearer, "openai.chat")
