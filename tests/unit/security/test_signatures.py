import base64
import hashlib
import hmac

import pytest

from app.security import signatures

URL = "https://news.example.com/api/whatsapp/webhook"
PARAMS = {"From": "whatsapp:+966500000001", "Body": "#TOKEN:ABC خبر", "NumMedia": "0"}


def test_signature_matches_twilio_algorithm():
    payload = URL + "Body#TOKEN:ABC خبر" + "Fromwhatsapp:+966500000001" + "NumMedia0"
    expected = base64.b64encode(
        hmac.new(b"secret", payload.encode("utf-8"), hashlib.sha1).digest()
    ).decode()

    assert signatures.compute_twilio_signature(URL, PARAMS, auth_token="secret") == expected


def test_signature_is_independent_of_param_order():
    reordered = dict(reversed(list(PARAMS.items())))
    assert signatures.compute_twilio_signature(
        URL, PARAMS, auth_token="secret"
    ) == signatures.compute_twilio_signature(URL, reordered, auth_token="secret")


def test_verify_accepts_valid_and_rejects_tampered():
    signature = signatures.compute_twilio_signature(URL, PARAMS, auth_token="secret")

    assert signatures.verify_twilio_signature(signature, URL, PARAMS, auth_token="secret")
    assert not signatures.verify_twilio_signature(
        signature, URL, {**PARAMS, "Body": "changed"}, auth_token="secret"
    )
    assert not signatures.verify_twilio_signature(signature, URL + "?x=1", PARAMS, auth_token="secret")


def test_missing_signature_is_rejected():
    assert not signatures.verify_twilio_signature(None, URL, PARAMS, auth_token="secret")
    assert not signatures.verify_twilio_signature("", URL, PARAMS, auth_token="secret")


def test_missing_auth_token_raises(monkeypatch):
    monkeypatch.setattr("app.security.signatures.settings.TWILIO_AUTH_TOKEN", None)
    with pytest.raises(signatures.SignatureError):
        signatures.compute_twilio_signature(URL, PARAMS)
