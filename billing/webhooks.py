from __future__ import annotations
import json
from flask import request, jsonify, current_app
from extensions import csrf, limiter
from errors import BillingError, MalformedPayload, ServerError
from .services.dodo_client import verify_webhook
from .services import events as ev
from . import billing_webhooks_bp


@billing_webhooks_bp.post("")
@csrf.exempt
@limiter.exempt
def dodo_webhook():
    body = request.get_data()

    try:
        webhook_id = verify_webhook(request.headers, body)
    except BillingError as e:
        current_app.logger.warning("billing_webhook: rejected delivery (%s: %s)", e.code, e.message)
        return jsonify(e.to_dict()), e.status_code

    if not body:
        err = MalformedPayload("Empty request body")
        return jsonify(err.to_dict()), err.status_code
    try:
        payload = json.loads(body)
    except ValueError:
        err = MalformedPayload("Invalid JSON payload")
        return jsonify(err.to_dict()), err.status_code
    if not isinstance(payload, dict):
        err = MalformedPayload("Payload must be a JSON object")
        return jsonify(err.to_dict()), err.status_code

    event_id = payload.get("event_id") or webhook_id
    if not event_id:
        err = MalformedPayload("Missing event id")
        return jsonify(err.to_dict()), err.status_code

    current_app.logger.info("billing_webhook: %s %s", payload.get("event_type"), event_id)
    try:
        return jsonify(ev.process_event(payload, str(event_id))), 200
    except MalformedPayload as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        # 500 makes the sender redeliver
        current_app.logger.exception("billing_webhook: processing failed for %s", event_id)
        err = ServerError("Webhook processing failed")
        return jsonify(err.to_dict()), err.status_code
