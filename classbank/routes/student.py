"""
Student routes for classbank.

The acting student always comes from the session principal; request bodies
only carry the operation's arguments.
"""

from flask import Blueprint, jsonify, request

from classbank import investments, ledger, loans, market, rewards, roster
from classbank.auth import login_required
from classbank.commands import (
    AccountTransferCmd,
    BuySeatCmd,
    OriginateLoanCmd,
    RepayLoanCmd,
    SellSeatCmd,
    SubmitQuizCmd,
    TradeAssetCmd,
    TransferCmd,
    parse_int,
)
from classbank.errors import Conflict
from classbank.extensions import limiter

student_bp = Blueprint('student', __name__, url_prefix='/student')


def _payload():
    return request.get_json(silent=True)


@student_bp.route('/me', methods=['GET'])
@login_required
def me(principal):
    student = roster.get_student(principal.tenant_id, principal.id)
    return jsonify({"status": "success", "student": roster.student_summary(student)})


# -------------------- TRANSFERS --------------------

@student_bp.route('/account-transfer', methods=['POST'])
@limiter.limit("20 per minute")
@login_required
def account_transfer(principal):
    cmd = AccountTransferCmd.from_payload(_payload())
    result = ledger.account_transfer(principal.tenant_id, principal.id, cmd)
    return jsonify({"status": "success", "message": "Transfer completed.", "transfer": result.to_dict()})


@student_bp.route('/transfer', methods=['POST'])
@limiter.limit("10 per minute")
@login_required
def transfer(principal):
    payload = _payload() or {}
    if payload.get('to_entity_type') is not None:
        raise Conflict("Students can only send money to classmates.")
    cmd = TransferCmd.from_payload(payload, from_student_id=principal.id)
    result = ledger.transfer(principal.tenant_id, cmd)
    return jsonify({"status": "success", "message": "Transfer completed.", "transfer": result.to_dict()})


@student_bp.route('/transactions', methods=['GET'])
@login_required
def list_transactions(principal):
    limit = request.args.get('limit')
    entries = ledger.list_transactions(
        principal.tenant_id,
        student_id=principal.id,
        transaction_type=request.args.get('type'),
        limit=parse_int(limit, 'limit', minimum=1) if limit else None,
    )
    return jsonify({"status": "success", "transactions": [entry.to_dict() for entry in entries]})


# -------------------- SEATS --------------------

@student_bp.route('/seats', methods=['GET'])
@login_required
def list_seats(principal):
    seats = market.list_seats(principal.tenant_id)
    return jsonify({
        "status": "success",
        "price": market.current_seat_price(principal.tenant_id),
        "seats": [seat.to_dict() for seat in seats],
        "owned_seat_numbers": [seat.seat_number for seat in seats if seat.owner_id == principal.id],
    })


@student_bp.route('/seats/<int:seat_number>/buy', methods=['POST'])
@limiter.limit("10 per minute")
@login_required
def buy_seat(principal, seat_number):
    cmd = BuySeatCmd.from_payload({'seat_number': seat_number})
    result = market.buy_seat(principal.tenant_id, principal.id, cmd)
    return jsonify({"status": "success", "message": f"You bought seat {seat_number}.", **result.to_dict()})


@student_bp.route('/seats/<int:seat_number>/sell', methods=['POST'])
@limiter.limit("10 per minute")
@login_required
def sell_seat(principal, seat_number):
    cmd = SellSeatCmd.from_payload({'seat_number': seat_number})
    result = market.sell_seat(principal.tenant_id, principal.id, cmd)
    return jsonify({"status": "success", "message": f"You sold seat {seat_number}.", **result.to_dict()})


# -------------------- INVESTMENTS --------------------

@student_bp.route('/investments/assets', methods=['GET'])
@login_required
def list_assets(principal):
    assets = investments.list_assets(principal.tenant_id)
    return jsonify({"status": "success", "assets": [asset.to_dict() for asset in assets]})


@student_bp.route('/investments/portfolio', methods=['GET'])
@login_required
def portfolio(principal):
    return jsonify({"status": "success", **investments.portfolio(principal.tenant_id, principal.id)})


@student_bp.route('/investments/buy', methods=['POST'])
@limiter.limit("10 per minute")
@login_required
def buy_asset(principal):
    cmd = TradeAssetCmd.from_payload(_payload())
    result = investments.buy_asset(principal.tenant_id, principal.id, cmd)
    return jsonify({
        "status": "success",
        "message": f"You bought {float(result.quantity):g} {result.symbol}.",
        "trade": result.to_dict(),
    })


@student_bp.route('/investments/sell', methods=['POST'])
@limiter.limit("10 per minute")
@login_required
def sell_asset(principal):
    cmd = TradeAssetCmd.from_payload(_payload())
    result = investments.sell_asset(principal.tenant_id, principal.id, cmd)
    return jsonify({
        "status": "success",
        "message": f"You sold {float(result.quantity):g} {result.symbol}.",
        "trade": result.to_dict(),
    })


# -------------------- LOANS --------------------

@student_bp.route('/loans', methods=['GET'])
@login_required
def list_loans(principal):
    return jsonify({"status": "success", **loans.loan_overview(principal.tenant_id, principal.id)})


@student_bp.route('/loans', methods=['POST'])
@limiter.limit("5 per minute")
@login_required
def apply_for_loan(principal):
    cmd = OriginateLoanCmd.from_payload(_payload())
    loan = loans.originate_loan(principal.tenant_id, principal.id, cmd)
    return jsonify({"status": "success", "message": "Loan approved.", "loan": loan.to_dict()}), 201


@student_bp.route('/loans/<int:loan_id>/repay', methods=['POST'])
@limiter.limit("10 per minute")
@login_required
def repay_loan(principal, loan_id):
    cmd = RepayLoanCmd.from_payload(_payload())
    result = loans.repay_loan(principal.tenant_id, principal.id, loan_id, cmd)
    message = "Loan fully repaid." if result.completed else "Payment received."
    return jsonify({"status": "success", "message": message, "payment": result.to_dict()})


@student_bp.route('/loans/<int:loan_id>/payoff', methods=['POST'])
@limiter.limit("5 per minute")
@login_required
def payoff_loan(principal, loan_id):
    result = loans.payoff_loan(principal.tenant_id, principal.id, loan_id)
    return jsonify({"status": "success", "message": "Loan fully repaid.", "payment": result.to_dict()})


# -------------------- DAILY QUIZ --------------------

@student_bp.route('/quiz/today', methods=['GET'])
@login_required
def todays_quiz(principal):
    quiz = rewards.todays_quiz(principal.tenant_id)
    attempt = rewards.completed_attempt(principal.id, quiz.id)
    return jsonify({
        "status": "success",
        "quiz": {
            "id": quiz.id,
            "quiz_date": quiz.quiz_date.isoformat(),
            "questions": quiz.public_questions(),
        },
        "completed": attempt is not None,
        "attempt": attempt.to_dict() if attempt else None,
        "rewards": rewards.reward_schedule_for(principal.tenant_id).to_dict(),
    })


@student_bp.route('/quiz/submit', methods=['POST'])
@limiter.limit("5 per minute")
@login_required
def submit_quiz(principal):
    cmd = SubmitQuizCmd.from_payload(_payload())
    result = rewards.submit_quiz(principal.tenant_id, principal.id, cmd)
    return jsonify({"status": "success", "message": "Quiz submitted.", **result.to_dict()})
