from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from linkguard.service.captcha import CaptchaGate, HttpCaptchaVerifier
from linkguard.service.errors import ValidationError


@pytest.fixture
def gate(store, captcha_verifier, clock):
    return CaptchaGate(store, captcha_verifier, ttl=timedelta(minutes=10), clock=clock)


async def test_solved_challenge_unlocks_one_attempt(gate, captcha_verifier):
    challenge = gate.issue("verify:203.0.113.7")

    assert await gate.redeem(challenge.id, "pass", "verify:203.0.113.7", remote_ip="203.0.113.7")
    assert not await gate.redeem(challenge.id, "pass", "verify:203.0.113.7")
    assert captcha_verifier.calls[0] == ("pass", "203.0.113.7")


async def test_wrong_subject_does_not_reach_verifier(gate, captcha_verifier):
    challenge = gate.issue("request:alice@example.com|203.0.113.7")

    assert not await gate.redeem(challenge.id, "pass", "request:mallory@example.com|203.0.113.7")
    assert captcha_verifier.calls == []


async def test_failed_response_leaves_challenge_open(gate, store):
    challenge = gate.issue("s")

    assert not await gate.redeem(challenge.id, "fail", "s")
    assert store.get_captcha(challenge.id).solved is False
    assert await gate.redeem(challenge.id, "pass", "s")


async def test_expired_challenge_rejected(gate, clock):
    challenge = gate.issue("s")
    clock.advance(minutes=11)
    assert not await gate.redeem(challenge.id, "pass", "s")


async def test_missing_inputs_and_oversized_payload(gate):
    assert not await gate.redeem(None, "pass", "s")
    assert not await gate.redeem("id", "", "s")
    with pytest.raises(ValidationError):
        await gate.redeem("id", "x" * 5000, "s")


async def test_no_verifier_configured_fails_closed(store, clock):
    gate = CaptchaGate(store, None, clock=clock)
    challenge = gate.issue("s")
    assert not await gate.redeem(challenge.id, "pass", "s")


async def test_http_verifier_posts_form():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"success": True})

    verifier = HttpCaptchaVerifier(
        "https://captcha.test/siteverify", "shh", transport=httpx.MockTransport(handler)
    )

    assert await verifier.verify("widget-token", remote_ip="203.0.113.7")
    assert seen["form"] == {
        "secret": ["shh"],
        "response": ["widget-token"],
        "remoteip": ["203.0.113.7"],
    }


async def test_http_verifier_fails_closed_on_errors():
    def unavailable(request):
        return httpx.Response(503)

    def garbage(request):
        return httpx.Response(200, content=b"not json")

    for handler in (unavailable, garbage):
        verifier = HttpCaptchaVerifier(
            "https://captcha.test/siteverify", "shh", transport=httpx.MockTransport(handler)
        )
        assert await verifier.verify("widget-token") is False
