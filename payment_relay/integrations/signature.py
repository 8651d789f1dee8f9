"""
Payment provider callback verification.

Implements:
- ZaloPay MAC verification (HMAC-SHA256 over the raw ``data`` string)
- PayOS signature verification (HMAC-SHA256 over sorted ``key=value`` pairs)
- Order code and outcome extraction

Verification never raises to the caller. A callback that cannot be
authenticated, or an authentic one that names no order, yields a
CallbackResult without an order code, which the intake acknowledges without
writing anything.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from payment_relay.config import Settings, get_settings
from payment_relay.database.models import PaymentProvider
from payment_relay.exceptions import CallbackValidationError, WebhookAuthenticationError

logger = structlog.get_logger(__name__)

ZALOPAY_SUCCESS_RESPONSE: Dict[str, Any] = {"return_code": 1, "return_message": "success"}
ZALOPAY_FAILURE_RESPONSE: Dict[str, Any] = {"return_code": -1}
PAYOS_SUCCESS_RESPONSE: Dict[str, Any] = {"success": True}
PAYOS_INVALID_PAYLOAD_RESPONSE: Dict[str, Any] = {"error": "Invalid payload"}
PAYOS_INVALID_SIGNATURE_RESPONSE: Dict[str, Any] = {"error": "Invalid signature"}
PAYOS_SUCCESS_CODE = "00"


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of verifying one provider callback."""

    order_code: Optional[str]
    success: bool
    response: Dict[str, Any] = field(default_factory=dict)

    @property
    def authenticated(self) -> bool:
        """Only authenticated callbacks naming an order carry an order code."""
        return self.order_code is not None


def compute_hmac_sha256(key: str, message: str) -> str:
    """Hex-encoded HMAC-SHA256 of message under key."""
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def signatures_match(expected: str, supplied: str) -> bool:
    """Constant-time comparison of two hex digests."""
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def _render_value(value: Any) -> str:
    # Matches the provider's JavaScript string coercion.
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def payos_canonical_string(data: Mapping[str, Any]) -> str:
    """
    Canonicalize a PayOS data document.

    Keys are sorted lexicographically and joined as ``key=value`` with ``&``,
    so the result does not depend on the input key order.
    """
    return "&".join(f"{key}={_render_value(data[key])}" for key in sorted(data))


def extract_zalopay_order_code(app_trans_id: str) -> str:
    """
    Order code from a ZaloPay ``app_trans_id`` of the form ``<prefix>_<orderCode>``.

    Returns the text after the first underscore, or the whole value when there
    is no underscore or nothing follows it.
    """
    _, sep, rest = app_trans_id.partition("_")
    return rest if sep and rest else app_trans_id


def _verify_zalopay(body: Mapping[str, Any], key2: str) -> CallbackResult:
    data = body.get("data")
    mac = body.get("mac")
    if not isinstance(data, str) or not data or not isinstance(mac, str) or not mac:
        raise CallbackValidationError("ZaloPay callback requires 'data' and 'mac'")
    if not key2:
        raise WebhookAuthenticationError("ZaloPay key2 is not configured")

    expected_mac = compute_hmac_sha256(key2, data)
    if not signatures_match(expected_mac, mac):
        raise WebhookAuthenticationError("ZaloPay MAC verification failed")

    try:
        data_json = json.loads(data)
    except ValueError as e:
        raise CallbackValidationError(f"ZaloPay data is not valid JSON: {e}") from e
    if not isinstance(data_json, dict):
        raise CallbackValidationError("ZaloPay data must be a JSON object")

    app_trans_id = data_json.get("app_trans_id")
    if app_trans_id is None or str(app_trans_id) == "":
        return CallbackResult(None, True, dict(ZALOPAY_SUCCESS_RESPONSE))

    return CallbackResult(
        order_code=extract_zalopay_order_code(str(app_trans_id)),
        success=True,
        response=dict(ZALOPAY_SUCCESS_RESPONSE),
    )


def _verify_payos(body: Mapping[str, Any], checksum_key: str) -> CallbackResult:
    data = body.get("data")
    signature = body.get("signature")
    if not isinstance(data, dict) or not data or not isinstance(signature, str) or not signature:
        raise CallbackValidationError("PayOS callback requires 'data' and 'signature'")
    if not checksum_key:
        raise WebhookAuthenticationError("PayOS checksum key is not configured")

    expected_signature = compute_hmac_sha256(checksum_key, payos_canonical_string(data))
    if not signatures_match(expected_signature, signature):
        raise WebhookAuthenticationError("PayOS signature verification failed")

    order_code = data.get("orderCode")
    if order_code is None or str(order_code) == "":
        return CallbackResult(None, True, dict(PAYOS_SUCCESS_RESPONSE))

    return CallbackResult(
        order_code=str(order_code),
        success=data.get("code") == PAYOS_SUCCESS_CODE,
        response=dict(PAYOS_SUCCESS_RESPONSE),
    )


class SignatureVerifier:
    """
    Verifies provider callbacks using the configured shared secrets.

    Example:
        verifier = SignatureVerifier()
        result = verifier.verify(PaymentProvider.ZALOPAY, body)
        if result.authenticated:
            ...
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._verifiers: Dict[PaymentProvider, Callable[[Mapping[str, Any]], CallbackResult]] = {
            PaymentProvider.ZALOPAY: lambda body: _verify_zalopay(body, self.settings.zalopay_key2),
            PaymentProvider.PAYOS: lambda body: _verify_payos(
                body, self.settings.payos_checksum_key
            ),
        }

    def verify(self, provider: PaymentProvider, body: Any) -> CallbackResult:
        """
        Verify a callback body and extract order code and outcome.

        Args:
            provider: Provider the callback was routed to
            body: Decoded callback body

        Returns:
            CallbackResult: order_code is None unless the callback is authentic
        """
        verifier = self._verifiers.get(provider)
        if verifier is None:
            logger.warning("webhook_provider_not_supported", provider=provider.value)
            return CallbackResult(None, False, {"error": "Unsupported provider"})

        if not isinstance(body, Mapping):
            body = {}

        try:
            result = verifier(body)
        except WebhookAuthenticationError as e:
            logger.error(
                "webhook_signature_rejected",
                provider=provider.value,
                error=str(e),
                security_event=True,
            )
            return CallbackResult(None, False, self._failure_response(provider, signature=True))
        except CallbackValidationError as e:
            logger.warning(
                "webhook_payload_invalid",
                provider=provider.value,
                error=str(e),
            )
            return CallbackResult(None, False, self._failure_response(provider, signature=False))

        if result.order_code is None:
            logger.warning("webhook_callback_without_order_code", provider=provider.value)
            return result

        logger.info(
            "webhook_signature_verified",
            provider=provider.value,
            order_code=result.order_code,
            success=result.success,
        )
        return result

    @staticmethod
    def _failure_response(provider: PaymentProvider, signature: bool) -> Dict[str, Any]:
        if provider == PaymentProvider.ZALOPAY:
            return dict(ZALOPAY_FAILURE_RESPONSE)
        if signature:
            return dict(PAYOS_INVALID_SIGNATURE_RESPONSE)
        return dict(PAYOS_INVALID_PAYLOAD_RESPONSE)
