from flask import current_app, jsonify, request
from flask_login import current_user, login_required

from tiersync.billing import BillingError, get_billing_accounts, get_reconciler, get_subscription_service
from tiersync.extensions import limiter
from tiersync.models import TIER_PREMIUM
from tiersync.storage import SqlBillingEventStore, SqlSubscriptionStore
from . import bp


def _stripe_failure(event_name: str, e: Exception, **extra):
    current_app.logger.exception(event_name, extra={"user_id": current_user.id, **extra})
    user_msg = getattr(e, "user_message", None) or "Payment provider request failed"
    return jsonify({"error": user_msg, "code": 502}), 502


def _int_arg(name: str, default: int, maximum: int) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
    return max(0, min(value, maximum))


@bp.get("/tier")
@login_required
def tier():
    service = get_subscription_service()
    return jsonify({"tier": service.get_user_subscription_tier(current_user.id)})


@bp.get("/subscription")
@login_required
def subscription():
    local = get_subscription_service().get_user_subscription(current_user.id)
    try:
        stripe_sub = get_billing_accounts().get_current_subscription(current_user.id)
    except BillingError:
        raise
    except Exception as e:
        return _stripe_failure("billing.subscription.lookup_failed", e)
    return jsonify({"subscription": local, "stripe_subscription": stripe_sub})


@bp.get("/history")
@login_required
def history():
    limit = _int_arg("limit", 10, 100) or 10
    try:
        invoices = get_billing_accounts().get_billing_history(current_user.id, limit=limit)
    except BillingError:
        raise
    except Exception as e:
        return _stripe_failure("billing.history.lookup_failed", e)
    return jsonify({"invoices": invoices})


@bp.post("/checkout.json")
@limiter.limit("10/minute")
@login_required
def checkout_json():
    """
    Create a Checkout Session for the premium price (or ``price_id`` from the
    body) and return its id and URL for the Stripe.js redirect.
    """
    if get_subscription_service().get_user_subscription_tier(current_user.id) == TIER_PREMIUM:
        return jsonify({"error": "Subscription already active", "code": 409}), 409

    data = request.get_json(silent=True) or {}
    price_id = (data.get("price_id") or current_app.config.get("STRIPE_PREMIUM_PRICE_ID") or "").strip()
    if not price_id:
        return jsonify({"error": "Missing price_id", "code": 400}), 400

    try:
        session = get_billing_accounts().create_checkout_session(
            current_user.id,
            price_id,
            success_url=data.get("success_url"),
            cancel_url=data.get("cancel_url"),
        )
    except BillingError:
        raise
    except Exception as e:
        return _stripe_failure("billing.checkout_json.session_create_failed", e, price_id=price_id)

    if not session.get("url") and not session.get("id"):
        return jsonify({"error": "Could not create checkout session", "code": 502}), 502
    return jsonify({"sessionId": session["id"], "url": session.get("url")})


@bp.post("/portal.json")
@limiter.limit("10/minute")
@login_required
def portal_json():
    data = request.get_json(silent=True) or {}
    try:
        payload = get_billing_accounts().create_portal_session(current_user.id, return_url=data.get("return_url"))
    except BillingError:
        raise
    except Exception as e:
        return _stripe_failure("billing.portal_json.session_create_failed", e)

    if not payload.get("url"):
        return jsonify({"error": "Could not create portal session", "code": 502}), 502
    return jsonify({"url": payload["url"]})


@bp.post("/sync")
@limiter.limit("5/minute")
@login_required
def sync():
    """Re-derive the caller's tier from Stripe when webhooks were missed."""
    try:
        result = get_reconciler().sync_user_subscription(current_user.id)
    except BillingError:
        raise
    except Exception as e:
        return _stripe_failure("billing.sync.failed", e)
    return jsonify({"tier": result.tier, "message": result.message})


@bp.get("/events")
@login_required
def events():
    limit = _int_arg("limit", 50, 200) or 50
    offset = _int_arg("offset", 0, 10_000)
    rows = SqlBillingEventStore().list_billing_events(user_id=current_user.id, limit=limit, offset=offset)
    audit = SqlSubscriptionStore().list_system_events(user_id=current_user.id)
    return jsonify(
        {
            "billing_events": [row.to_dict() for row in rows],
            "system_events": [
                {
                    "id": e.id,
                    "event_type": e.event_type,
                    "actor_id": e.actor_id,
                    "description": e.description,
                    "properties": e.properties,
                    "created_at": e.created_at.isoformat() if e.created_at else None,
                }
                for e in audit
            ],
        }
    )
