"""
Webhook Signatures - HMAC verification for inbound provider callbacks.

Meta signs the raw body with HMAC-SHA256 and sends ``sha256=<hex>`` in
X-Hub-Signature-256. The commerce platform sends base64 HMAC-SHA256 in
X-Shopify-Hmac-Sha256. Meta's data-deletion callback carries a
``signed_request`` of the form ``<signature>.<payload>``, both base64url
without padding, the signature being HMAC-SHA256 of the encoded payload.
"""

import base64
import hashlib
import hmac
import json
from collections.abc import Iterable
from typing import Any

from dmtobuy.exceptions import WebhookVerificationError

META_SIGNATURE_PREFIX = "sha256="


def _digest(secret: str, body: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()


def verify_meta_signature(body: bytes, header: str | None, secrets: Iterable[str]) -> None:
    """
    Verify X-Hub-Signature-256 against any of the configured app secrets.

    Raises:
        WebhookVerificationError: Header missing, malformed or not matching
    """
    if not header:
        raise WebhookVerificationError("Missing X-Hub-Signature-256 header")
    if not header.startswith(META_SIGNATURE_PREFIX):
        raise WebhookVerificationError("Malformed X-Hub-Signature-256 header")

    received = header[len(META_SIGNATURE_PREFIX) :].strip().lower()
    for secret in secrets:
        if not secret:
            continue
        expected = _digest(secret, body).hex()
        if hmac.compare_digest(expected, received):
            return
    raise WebhookVerificationError("Signature mismatch")


def verify_commerce_signature(body: bytes, header: str | None, secret: str) -> None:
    """
    Verify the commerce platform's base64 HMAC.

    Raises:
        WebhookVerificationError: Secret unset, header missing or not matching
    """
    if not secret:
        raise WebhookVerificationError("Commerce webhook secret is not configured")
    if not header:
        raise WebhookVerificationError("Missing X-Shopify-Hmac-Sha256 header")

    expected = base64.b64encode(_digest(secret, body)).decode("ascii")
    if not hmac.compare_digest(expected, header.strip()):
        raise WebhookVerificationError("Signature mismatch")


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def parse_signed_request(signed_request: str, secrets: Iterable[str]) -> dict[str, Any]:
    """
    Verify a Meta ``signed_request`` and return its decoded payload.

    Raises:
        WebhookVerificationError: Malformed value, unsupported algorithm or bad signature
    """
    encoded_signature, _, encoded_payload = signed_request.strip().partition(".")
    if not encoded_signature or not encoded_payload:
        raise WebhookVerificationError("Malformed signed_request")
    try:
        signature = _b64url_decode(encoded_signature)
        payload = json.loads(_b64url_decode(encoded_payload))
    except ValueError as exc:
        raise WebhookVerificationError("Malformed signed_request") from exc
    if not isinstance(payload, dict):
        raise WebhookVerificationError("Malformed signed_request")
    if str(payload.get("algorithm", "HMAC-SHA256")).upper() != "HMAC-SHA256":
        raise WebhookVerificationError("Unsupported signed_request algorithm")

    body = encoded_payload.encode("ascii", errors="replace")
    for secret in secrets:
        if secret and hmac.compare_digest(_digest(secret, body), signature):
            return payload
    raise WebhookVerificationError("Signature mismatch")
