import json

import stripe
from flask import abort, current_app, jsonify, request

from tiersync.billing import EventInFlight, MalformedEvent, get_reconciler
from tiersync.extensions import csrf, limiter
from . import bp


@csrf.exempt
@limiter.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe -> /webhooks/stripe

    Non-2xx makes Stripe redeliver, so handler faults answer 500 and an event
    still owned by another delivery answers 409.
    """
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        abort(500, description="Stripe webhook secret not configured")

    raw_bytes = request.get_data(cache=False, as_text=False)
    sig_header = request.headers.get("Stripe-Signature", "")

    try:
        stripe.Webhook.construct_event(
            payload=raw_bytes.decode("utf-8"),
            sig_header=sig_header,
            secret=secret,
        )
    except (ValueError, stripe.SignatureVerificationError):
        current_app.logger.warning("billing.webhook.invalid_signature", extra={"remote_addr": request.remote_addr})
        return jsonify({"error": "invalid_signature", "code": 400}), 400

    # Plain dict from the verified body; handlers never see StripeObjects
    try:
        event = json.loads(raw_bytes.decode("utf-8"))
    except ValueError:
        return jsonify({"error": "malformed_event", "code": 400}), 400
    if not isinstance(event, dict):
        return jsonify({"error": "malformed_event", "code": 400}), 400

    try:
        result = get_reconciler().process_event(event)
    except (MalformedEvent, EventInFlight) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception(
            "billing.webhook.handler_error",
            extra={"stripe_event_id": event.get("id"), "event_type": event.get("type")},
        )
        return jsonify({"error": "handler_error", "code": 500}), 500

    return jsonify({"ok": True, "outcome": result.outcome.value, "id": result.billing_event.id}), 200
