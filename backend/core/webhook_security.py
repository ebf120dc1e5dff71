"""
Webhook and Scheduler Request Verification

Signature checks for inbound Meta webhooks and shared-secret checks for
scheduler-triggered endpoints. All comparisons are constant-time.
"""
import hmac
import hashlib
import logging
from typing import Optional, Union

from backend.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

META_SIGNATURE_HEADER = "x-hub-signature-256"
META_SIGNATURE_PREFIX = "sha256="


class WebhookSecurityError(Exception):
    """Base class for webhook security errors"""
    pass


class InvalidSignatureError(WebhookSecurityError):
    """Raised when webhook signature is invalid"""
    pass


class MissingSignatureError(WebhookSecurityError):
    """Raised when required webhook signature is missing"""
    pass


class MetaWebhookVerifier:
    """
    Verifies Meta (Facebook/Instagram) webhook deliveries

    Features:
    - X-Hub-Signature-256 HMAC-SHA256 verification over the raw body
    - Subscription handshake (hub.challenge) verification
    - Unsigned deliveries only accepted in development
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def verify_signature(self, payload: Union[str, bytes], signature: Optional[str]) -> bool:
        """
        Verify the X-Hub-Signature-256 header of a webhook delivery

        Args:
            payload: Raw request body
            signature: Header value ("sha256=<hex>")

        Returns:
            True if the signature is valid (or checking is disabled in development)

        Raises:
            MissingSignatureError: No secret configured, or no signature sent
            InvalidSignatureError: Signature malformed or not matching
        """
        secret = self.settings.meta_app_secret
        if not secret:
            if self.settings.is_development:
                logger.warning("META_APP_SECRET not set, accepting unsigned Meta webhook (development mode)")
                return True
            raise MissingSignatureError("No Meta app secret configured")

        if not signature or not signature.strip():
            if self.settings.is_development:
                logger.warning("Unsigned Meta webhook accepted (development mode)")
                return True
            raise MissingSignatureError("Webhook signature is empty")

        if isinstance(payload, str):
            payload = payload.encode('utf-8')

        if not signature.startswith(META_SIGNATURE_PREFIX):
            logger.warning(f"Invalid Meta signature format: {signature[:20]}...")
            raise InvalidSignatureError("Invalid signature format")

        provided_signature = signature[len(META_SIGNATURE_PREFIX):]
        expected_signature = hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()

        if not hmac.compare_digest(expected_signature, provided_signature):
            logger.warning("Meta webhook signature verification failed")
            raise InvalidSignatureError("Signature mismatch")
        return True

    def verify_subscription(self, mode: Optional[str], token: Optional[str]) -> bool:
        """Check a hub.mode=subscribe handshake against the configured verify token"""
        expected = self.settings.meta_webhook_verify_token
        if mode != "subscribe" or not expected or not token:
            return False
        return hmac.compare_digest(expected, token)


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def verify_shared_secret(
    provided: Optional[str],
    settings: Optional[Settings] = None,
) -> bool:
    """
    Check a scheduler request's secret against CRON_SECRET.

    Production requires a configured secret and rejects every request when
    none is set. Outside production the secret is optional for local runs,
    but a wrong one is still rejected when the request supplies it.
    """
    settings = settings or get_settings()
    expected = settings.cron_secret

    if settings.is_production:
        if not expected:
            logger.error("CRON_SECRET is not configured; rejecting scheduler request")
            return False
        if not provided:
            return False
    elif not expected or not provided:
        return True

    return hmac.compare_digest(expected.encode('utf-8'), provided.encode('utf-8'))
