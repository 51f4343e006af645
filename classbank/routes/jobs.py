"""
Job trigger routes for classbank.

An external scheduler calls these endpoints with
``Authorization: Bearer <CRON_SECRET>``. They are exempt from CSRF because
they carry no session.
"""

import hmac
import logging
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from classbank import loans, market, rewards
from classbank.errors import EconomyError
from classbank.extensions import csrf
from classbank.models import Admin

jobs_bp = Blueprint('jobs', __name__, url_prefix='/jobs')
csrf.exempt(jobs_bp)

logger = logging.getLogger('classbank.jobs')


def cron_secret_required(f):
    """Reject calls without the configured bearer secret."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get('CRON_SECRET')
        if not secret:
            logger.warning(f"Job endpoint {request.path} called but CRON_SECRET is not configured")
            return jsonify({"status": "error", "message": "Job endpoints are disabled."}), 401

        header = request.headers.get('Authorization', '')
        scheme, _, token = header.partition(' ')
        if scheme.lower() != 'bearer' or not hmac.compare_digest(token.strip(), secret):
            logger.warning(f"Rejected job call to {request.path} with an invalid secret")
            return jsonify({"status": "error", "message": "Invalid job secret."}), 401
        return f(*args, **kwargs)
    return decorated_function


@jobs_bp.route('/pay-quiz-rewards', methods=['POST'])
@cron_secret_required
def pay_quiz_rewards():
    result = rewards.sweep_unpaid_rewards()
    logger.info(f"Quiz reward sweep paid {result.paid_count} attempts")
    return jsonify({"status": "success", **result.to_dict()})


@jobs_bp.route('/loan-defaults', methods=['POST'])
@cron_secret_required
def loan_defaults():
    defaulted = loans.check_loan_defaults()
    logger.info(f"Loan default check marked {len(defaulted)} loans")
    return jsonify({"status": "success", "defaulted_loan_ids": defaulted})


@jobs_bp.route('/seat-prices', methods=['POST'])
@cron_secret_required
def seat_prices():
    prices = {}
    failures = []
    for teacher_id, in Admin.query.with_entities(Admin.id).order_by(Admin.id).all():
        try:
            prices[str(teacher_id)] = market.recompute_seat_price(teacher_id).price
        except EconomyError as exc:
            logger.error(f"Seat price refresh failed for teacher {teacher_id}: {exc.message}")
            failures.append({'teacher_id': teacher_id, 'error': exc.message})
    logger.info(f"Refreshed seat prices for {len(prices)} teachers")
    return jsonify({"status": "success", "prices": prices, "failures": failures})
