import base64
import hashlib
import hmac
import json
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from email.utils import format_datetime, parsedate_to_datetime

import requests

from staydesk.core.errors import GatewayError

logger = logging.getLogger(__name__)

SIGNED_HEADERS = "host date (request-target) digest"


@dataclass
class GatewayConfig:
    host: str               # api.gateway.example
    merchant_id: str        # v-c-merchant-id header
    key_id: str             # keyid in Signature header
    secret_key_b64: str     # shared secret key, base64
    timeout: int = 25


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(int(amount)) / 100).quantize(Decimal("0.01"))


def _sha256_digest_b64(body_bytes: bytes) -> str:
    return base64.b64encode(hashlib.sha256(body_bytes).digest()).decode("utf-8")


def _hmac_sha256_b64(secret_key: bytes, msg: str) -> str:
    sig = hmac.new(secret_key, msg.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(sig).decode("utf-8")


def _decode_secret(secret_b64: str) -> bytes:
    # Tolerate pasted secrets with whitespace/newlines.
    b64 = (secret_b64 or "").strip().replace("\r", "").replace("\n", "").replace(" ", "")
    return base64.b64decode(b64)


def signature_headers(secret_key_b64: str, key_id: str, method: str, path: str, host: str, body: bytes, date_str: str | None = None) -> dict:
    """Digest + HMAC-SHA256 HTTP Signature headers, in the form the gateway both accepts and sends."""
    date_str = date_str or format_datetime(datetime.now(timezone.utc), usegmt=True)
    digest_header = f"SHA-256={_sha256_digest_b64(body)}"
    # newline separated, no trailing newline
    signing_string = "\n".join([
        f"host: {host}",
        f"date: {date_str}",
        f"(request-target): {method.lower()} {path}",
        f"digest: {digest_header}",
    ])
    signature_b64 = _hmac_sha256_b64(_decode_secret(secret_key_b64), signing_string)
    return {
        "Host": host,
        "Date": date_str,
        "Digest": digest_header,
        "Signature": (
            f'keyid="{key_id}", algorithm="HmacSHA256", '
            f'headers="{SIGNED_HEADERS}", signature="{signature_b64}"'
        ),
    }


def verify_signature(headers: dict, body: bytes, method: str, path: str, secret_key_b64: str,
                     tolerance_seconds: int = 300, now: datetime | None = None) -> bool:
    """Verify a signed gateway event.

    Checks the Digest (SHA-256 of the raw body), the HMAC-SHA256 signature
    over the headers listed in the Signature header, and that the Date header
    is within ``tolerance_seconds`` of ``now``. Missing pieces fail closed.
    """
    headers = {k.lower(): v for k, v in headers.items()}
    signature_header = headers.get("signature")
    digest_header = headers.get("digest")
    if not signature_header or not digest_header or not secret_key_b64:
        return False

    m = re.match(r"SHA-256=(.+)", digest_header.strip())
    if not m:
        return False
    try:
        expected_digest = base64.b64decode(m.group(1))
    except ValueError:
        return False
    if not hmac.compare_digest(hashlib.sha256(body).digest(), expected_digest):
        return False

    parts = {}
    for chunk in signature_header.split(","):
        if "=" in chunk:
            k, v = chunk.strip().split("=", 1)
            parts[k] = v.strip().strip('"')
    signed_headers = (parts.get("headers") or "").split()
    received_sig_b64 = parts.get("signature")
    if not signed_headers or not received_sig_b64:
        return False
    if "digest" not in signed_headers or "date" not in signed_headers:
        return False

    signing_lines = []
    for hname in signed_headers:
        hl = hname.lower()
        if hl == "(request-target)":
            signing_lines.append(f"(request-target): {method.lower()} {path}")
        else:
            val = headers.get(hl)
            if val is None:
                return False
            signing_lines.append(f"{hl}: {str(val).strip()}")

    try:
        computed_b64 = _hmac_sha256_b64(_decode_secret(secret_key_b64), "\n".join(signing_lines))
    except ValueError:
        logger.error("Webhook secret is not valid base64")
        return False
    if not hmac.compare_digest(computed_b64, received_sig_b64):
        return False

    try:
        sent_at = parsedate_to_datetime(headers["date"])
    except (TypeError, ValueError):
        return False
    if sent_at.tzinfo is None:
        # "-0000" parses naive; RFC 5322 reads it as UTC
        sent_at = sent_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return abs((now - sent_at).total_seconds()) <= tolerance_seconds


class GatewayClient:
    def __init__(self, cfg: GatewayConfig):
        self.cfg = cfg

    def request(self, method: str, path: str, payload: dict | None = None) -> dict:
        body_bytes = json.dumps(payload, separators=(",", ":")).encode("utf-8") if payload is not None else b""
        headers = signature_headers(self.cfg.secret_key_b64, self.cfg.key_id, method, path, self.cfg.host, body_bytes)
        headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
            "v-c-merchant-id": self.cfg.merchant_id,
        })
        url = f"https://{self.cfg.host}{path}"
        try:
            r = requests.request(method=method.upper(), url=url, data=body_bytes, headers=headers, timeout=self.cfg.timeout)
        except requests.RequestException as e:
            logger.warning("Gateway %s %s unreachable: %s", method, path, e)
            raise GatewayError(f"payment gateway unreachable: {e.__class__.__name__}") from e
        try:
            data = r.json() if r.text else {}
        except ValueError:
            data = {"raw": r.text}
        if r.status_code >= 400:
            logger.warning("Gateway %s %s returned %s", method, path, r.status_code)
            raise GatewayError(f"payment gateway returned {r.status_code}", response=data)
        return data

    def create_payment_intent(self, *, client_ref: str, amount_minor: int, currency: str, payment_method: str, metadata: dict) -> dict:
        payload = {
            "clientReferenceInformation": {"code": client_ref},
            "amount": amount_minor,
            "currency": currency.lower(),
            "paymentMethod": payment_method,
            "captureMethod": "automatic",
            "metadata": metadata,
        }
        return self.request("POST", "/v1/payment_intents", payload)

    def retrieve_payment_intent(self, *, intent_id: str) -> dict:
        return self.request("GET", f"/v1/payment_intents/{intent_id}")

    def refund(self, *, intent_id: str, client_ref: str, amount_minor: int, currency: str) -> dict:
        payload = {
            "clientReferenceInformation": {"code": client_ref},
            "paymentIntent": intent_id,
            "amount": amount_minor,
            "currency": currency.lower(),
        }
        return self.request("POST", "/v1/refunds", payload)


class SandboxGatewayClient:
    """Skips the real gateway so the full flow can be exercised in development.

    Settlement still arrives through signed webhook events.
    """

    def create_payment_intent(self, *, client_ref: str, amount_minor: int, currency: str, payment_method: str, metadata: dict) -> dict:
        intent_id = f"pi_sandbox_{uuid.uuid4().hex[:16]}"
        return {"id": intent_id, "client_secret": f"{intent_id}_secret", "status": "requires_confirmation",
                "amount": amount_minor, "currency": currency.lower()}

    def retrieve_payment_intent(self, *, intent_id: str) -> dict:
        return {"id": intent_id, "client_secret": f"{intent_id}_secret", "status": "requires_confirmation"}

    def refund(self, *, intent_id: str, client_ref: str, amount_minor: int, currency: str) -> dict:
        return {"id": f"re_sandbox_{uuid.uuid4().hex[:16]}", "status": "pending", "paymentIntent": intent_id, "amount": amount_minor}


def build_gateway_client(settings):
    if settings.GATEWAY_SANDBOX:
        return SandboxGatewayClient()
    if not (settings.GATEWAY_MERCHANT_ID and settings.GATEWAY_KEY_ID and settings.GATEWAY_SECRET_KEY_B64):
        raise GatewayError("card gateway is not configured (missing env vars)")
    return GatewayClient(GatewayConfig(
        host=settings.GATEWAY_HOST,
        merchant_id=settings.GATEWAY_MERCHANT_ID,
        key_id=settings.GATEWAY_KEY_ID,
        secret_key_b64=settings.GATEWAY_SECRET_KEY_B64,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    ))
