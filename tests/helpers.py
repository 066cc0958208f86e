import itertools
import json
import uuid

from staydesk.core.config import settings
from staydesk.core.errors import GatewayError
from staydesk.core.security import create_access_token
from staydesk.services.gateway_client import signature_headers, to_minor_units

WEBHOOK_PATH = "/api/v1/payments/webhook"


class FakeGateway:
    """Records calls and returns gateway-shaped responses."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.intents = []
        self.refunds = []
        self.fail = False
        self.on_refund = None

    def create_payment_intent(self, *, client_ref, amount_minor, currency, payment_method, metadata):
        if self.fail:
            raise GatewayError("payment gateway returned 503")
        intent_id = f"pi_test_{next(self._ids)}"
        self.intents.append({"id": intent_id, "amount": amount_minor, "currency": currency, "ref": client_ref})
        return {"id": intent_id, "client_secret": f"{intent_id}_secret"}

    def retrieve_payment_intent(self, *, intent_id):
        if self.fail:
            raise GatewayError("payment gateway returned 503")
        return {"id": intent_id, "client_secret": f"{intent_id}_secret", "status": "requires_confirmation"}

    def refund(self, *, intent_id, client_ref, amount_minor, currency):
        if self.fail:
            raise GatewayError("payment gateway unreachable: ConnectionError")
        if self.on_refund is not None:
            self.on_refund(intent_id)
        refund_id = f"re_test_{next(self._ids)}"
        self.refunds.append({"id": refund_id, "intent": intent_id, "amount": amount_minor})
        return {"id": refund_id, "status": "pending"}


def auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def gateway_event(event_type, obj, event_id=None) -> bytes:
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "data": {"object": obj},
    }).encode("utf-8")


def sign(body: bytes, path=WEBHOOK_PATH, secret_b64=None, date_str=None) -> dict:
    return signature_headers(secret_b64 or settings.GATEWAY_WEBHOOK_SECRET_B64, "gateway-test", "POST", path,
                             "testserver", body, date_str=date_str)


def succeeded(intent_id, amount, currency=None, event_id=None) -> bytes:
    return gateway_event("payment_intent.succeeded", {
        "id": intent_id, "amount": to_minor_units(amount), "currency": (currency or settings.CURRENCY).lower(),
    }, event_id)


def failed(intent_id, event_id=None) -> bytes:
    return gateway_event("payment_intent.payment_failed", {
        "id": intent_id, "last_payment_error": {"message": "card_declined"},
    }, event_id)


def refunded(intent_id, refund_id, amount, event_id=None) -> bytes:
    return gateway_event("charge.refunded", {
        "id": refund_id, "payment_intent": intent_id, "amount": to_minor_units(amount),
    }, event_id)
