"""
Tests for webhook signature and scheduler secret verification
"""
import hashlib
import hmac

import pytest

from backend.core.webhook_security import (
    InvalidSignatureError,
    MetaWebhookVerifier,
    MissingSignatureError,
    extract_bearer_token,
    verify_shared_secret,
)

BODY = b'{"object":"page","entry":[]}'


def signature(secret="app-secret", body=BODY):
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class TestMetaWebhookVerifier:
    """X-Hub-Signature-256 checks"""

    def test_valid_signature(self, settings):
        assert MetaWebhookVerifier(settings).verify_signature(BODY, signature()) is True

    def test_string_payload_accepted(self, settings):
        assert MetaWebhookVerifier(settings).verify_signature(BODY.decode("utf-8"), signature()) is True

    def test_mismatch(self, settings):
        with pytest.raises(InvalidSignatureError):
            MetaWebhookVerifier(settings).verify_signature(BODY, signature("other-secret"))

    def test_tampered_body(self, settings):
        with pytest.raises(InvalidSignatureError):
            MetaWebhookVerifier(settings).verify_signature(BODY + b" ", signature())

    def test_wrong_prefix(self, settings):
        with pytest.raises(InvalidSignatureError, match="format"):
            MetaWebhookVerifier(settings).verify_signature(BODY, signature().replace("sha256=", "sha1="))

    def test_missing_signature(self, settings):
        with pytest.raises(MissingSignatureError):
            MetaWebhookVerifier(settings).verify_signature(BODY, None)

    def test_unsigned_allowed_in_development(self, settings):
        dev = settings.model_copy(update={"environment": "development"})

        assert MetaWebhookVerifier(dev).verify_signature(BODY, "") is True

    def test_no_app_secret_outside_development(self, settings):
        unconfigured = settings.model_copy(update={"meta_app_secret": None})

        with pytest.raises(MissingSignatureError):
            MetaWebhookVerifier(unconfigured).verify_signature(BODY, signature())

    def test_subscription_handshake(self, settings):
        verifier = MetaWebhookVerifier(settings)

        assert verifier.verify_subscription("subscribe", "verify-me") is True
        assert verifier.verify_subscription("subscribe", "nope") is False
        assert verifier.verify_subscription("unsubscribe", "verify-me") is False
        assert verifier.verify_subscription("subscribe", None) is False


class TestSchedulerSecret:
    """Shared secret rules for scheduler requests"""

    def test_extract_bearer_token(self):
        assert extract_bearer_token("Bearer abc") == "abc"
        assert extract_bearer_token("bearer  abc ") == "abc"
        assert extract_bearer_token("Basic abc") is None
        assert extract_bearer_token("Bearer ") is None
        assert extract_bearer_token(None) is None

    def test_matching_secret(self, settings):
        assert verify_shared_secret("cron-secret", settings) is True
        assert verify_shared_secret("cron-secreT", settings) is False

    def test_optional_outside_production(self, settings):
        assert verify_shared_secret(None, settings) is True
        assert verify_shared_secret("anything", settings.model_copy(update={"cron_secret": None})) is True

    def test_required_in_production(self, settings):
        production = settings.model_copy(update={"environment": "production"})

        assert verify_shared_secret(None, production) is False
        assert verify_shared_secret("cron-secret", production) is True

    def test_production_without_configured_secret_fails_closed(self, settings):
        production = settings.model_copy(update={"environment": "production", "cron_secret": None})

        assert verify_shared_secret("cron-secret", production) is False
        assert verify_shared_secret(None, production) is False
