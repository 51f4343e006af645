"""
Teacher routes for classbank.

Every route is scoped to the signed-in teacher's class: the tenant id comes
from the session principal, never from the request body.
"""

from flask import Blueprint, jsonify, request

from classbank import investments, ledger, loans, market, rewards, roster
from classbank.auth import admin_required
from classbank.commands import (
    AllowanceCmd,
    CreateStudentCmd,
    CreditAdjustmentCmd,
    MultiTransferCmd,
    PublishQuizCmd,
    QuizSettingsCmd,
    RecomputePriceCmd,
    SeatLayoutCmd,
    TaxCollectionCmd,
    TransferCmd,
    UpdateStudentCmd,
    UpsertAssetCmd,
    parse_int,
)
from classbank.models import EconomicEntity, Student
from classbank.utils.helpers import format_utc_iso

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


def _payload():
    return request.get_json(silent=True)


# -------------------- STUDENTS --------------------

@admin_bp.route('/students', methods=['GET'])
@admin_required
def list_students(principal):
    students = Student.query.filter_by(teacher_id=principal.tenant_id).order_by(Student.id).all()
    return jsonify({
        "status": "success",
        "students": [roster.student_summary(student) for student in students],
    })


@admin_bp.route('/students', methods=['POST'])
@admin_required
def create_student(principal):
    cmd = CreateStudentCmd.from_payload(_payload())
    student = roster.create_student(principal.tenant_id, cmd)
    return jsonify({
        "status": "success",
        "message": f"Student {student.name} created.",
        "student": roster.student_summary(student),
    }), 201


@admin_bp.route('/students/<int:student_id>', methods=['PATCH'])
@admin_required
def update_student(principal, student_id):
    cmd = UpdateStudentCmd.from_payload(_payload())
    student = roster.update_student(principal.tenant_id, student_id, cmd)
    return jsonify({"status": "success", "message": "Student updated.", "student": roster.student_summary(student)})


@admin_bp.route('/students/<int:student_id>', methods=['DELETE'])
@admin_required
def delete_student(principal, student_id):
    roster.delete_student(principal.tenant_id, student_id)
    return jsonify({"status": "success", "message": "Student deleted."})


@admin_bp.route('/students/<int:student_id>/credit-score', methods=['POST'])
@admin_required
def adjust_credit_score(principal, student_id):
    cmd = CreditAdjustmentCmd.from_payload(_payload())
    old_score, new_score = roster.adjust_credit_score(principal.tenant_id, student_id, cmd)
    return jsonify({
        "status": "success",
        "message": f"Credit score changed from {old_score} to {new_score}.",
        "old_score": old_score,
        "new_score": new_score,
    })


# -------------------- ECONOMIC ENTITIES --------------------

@admin_bp.route('/entities', methods=['GET'])
@admin_required
def list_entities(principal):
    entities = EconomicEntity.query.filter_by(teacher_id=principal.tenant_id).order_by(EconomicEntity.id).all()
    return jsonify({"status": "success", "entities": [roster.entity_summary(entity) for entity in entities]})


@admin_bp.route('/entities/initialize', methods=['POST'])
@admin_required
def initialize_entities(principal):
    created = roster.initialize_entities(principal.tenant_id)
    return jsonify({
        "status": "success",
        "message": f"Initialized {len(created)} economic entities.",
        "entities": [roster.entity_summary(entity) for entity in created],
    }), 201


# -------------------- MONEY MOVEMENT --------------------

@admin_bp.route('/transfer', methods=['POST'])
@admin_required
def transfer(principal):
    cmd = TransferCmd.from_payload(_payload())
    result = ledger.transfer(principal.tenant_id, cmd)
    return jsonify({"status": "success", "message": "Transfer completed.", "transfer": result.to_dict()})


@admin_bp.route('/multi-transfer', methods=['POST'])
@admin_required
def multi_transfer(principal):
    cmd = MultiTransferCmd.from_payload(_payload())
    result = ledger.multi_transfer(principal.tenant_id, cmd)
    if result.failure_count:
        return jsonify({
            "status": "partial",
            "message": f"{result.failure_count} of {len(result.legs)} transfers failed.",
            **result.to_dict(),
        }), 207
    return jsonify({
        "status": "success",
        "message": f"Sent to {result.success_count} students.",
        **result.to_dict(),
    })


@admin_bp.route('/tax-collection', methods=['POST'])
@admin_required
def collect_tax(principal):
    cmd = TaxCollectionCmd.from_payload(_payload())
    result = ledger.collect_tax(principal.tenant_id, cmd)
    return jsonify({
        "status": "success",
        "message": f"Collected tax from {len(result.collected)} students.",
        **result.to_dict(),
    })


@admin_bp.route('/allowance', methods=['POST'])
@admin_required
def distribute_allowance(principal):
    cmd = AllowanceCmd.from_payload(_payload())
    result = ledger.distribute_allowance(principal.tenant_id, cmd)
    return jsonify({
        "status": "success",
        "message": f"Paid allowance to {len(result.paid)} students.",
        **result.to_dict(),
    })


@admin_bp.route('/transactions', methods=['GET'])
@admin_required
def list_transactions(principal):
    student_id = request.args.get('student_id')
    limit = request.args.get('limit')
    entries = ledger.list_transactions(
        principal.tenant_id,
        student_id=parse_int(student_id, 'student_id', minimum=1) if student_id else None,
        transaction_type=request.args.get('type'),
        limit=parse_int(limit, 'limit', minimum=1) if limit else None,
    )
    return jsonify({"status": "success", "transactions": [entry.to_dict() for entry in entries]})


# -------------------- SEAT MARKET --------------------

@admin_bp.route('/seats', methods=['GET'])
@admin_required
def list_seats(principal):
    return jsonify({
        "status": "success",
        "market": market.market_summary(principal.tenant_id),
        "seats": [seat.to_dict() for seat in market.list_seats(principal.tenant_id)],
    })


@admin_bp.route('/seats/layout', methods=['POST'])
@admin_required
def update_seat_layout(principal):
    cmd = SeatLayoutCmd.from_payload(_payload())
    result = market.apply_seat_layout(principal.tenant_id, cmd)
    return jsonify({"status": "success", "message": f"Layout saved with {result['total_seats']} seats.", **result})


@admin_bp.route('/seats/recompute-price', methods=['POST'])
@admin_required
def recompute_seat_price(principal):
    cmd = RecomputePriceCmd.from_payload(_payload())
    result = market.recompute_seat_price(principal.tenant_id, cmd.manual_student_count, cmd.persist)
    return jsonify({"status": "success", "message": f"Seat price is now {result.price}.", **result.to_dict()})


# -------------------- INVESTMENTS --------------------

@admin_bp.route('/market-assets', methods=['GET'])
@admin_required
def list_market_assets(principal):
    assets = investments.list_assets(principal.tenant_id, include_inactive=True)
    return jsonify({"status": "success", "assets": [asset.to_dict() for asset in assets]})


@admin_bp.route('/market-assets', methods=['POST'])
@admin_required
def upsert_market_asset(principal):
    cmd = UpsertAssetCmd.from_payload(_payload())
    asset, created = investments.upsert_asset(principal.tenant_id, cmd)
    return jsonify({
        "status": "success",
        "message": f"{asset.symbol} {'listed' if created else 'updated'}.",
        "asset": asset.to_dict(),
    }), 201 if created else 200


# -------------------- QUIZZES --------------------

@admin_bp.route('/quizzes', methods=['POST'])
@admin_required
def publish_quiz(principal):
    cmd = PublishQuizCmd.from_payload(_payload())
    quiz = rewards.publish_quiz(principal.tenant_id, cmd)
    return jsonify({
        "status": "success",
        "message": "Quiz published.",
        "quiz": {
            "id": quiz.id,
            "quiz_date": quiz.quiz_date.isoformat(),
            "question_count": len(quiz.questions or []),
            "created_at": format_utc_iso(quiz.created_at),
        },
    }), 201


@admin_bp.route('/quiz-settings', methods=['PUT'])
@admin_required
def update_quiz_settings(principal):
    cmd = QuizSettingsCmd.from_payload(_payload())
    schedule = rewards.update_quiz_settings(principal.tenant_id, cmd)
    return jsonify({"status": "success", "message": "Quiz rewards updated.", "settings": schedule.to_dict()})


@admin_bp.route('/quiz-rewards/sweep', methods=['POST'])
@admin_required
def sweep_quiz_rewards(principal):
    result = rewards.sweep_unpaid_rewards(principal.tenant_id)
    return jsonify({"status": "success", "message": f"Paid {result.paid_count} pending rewards.", **result.to_dict()})


# -------------------- LOANS --------------------

@admin_bp.route('/loans/check-defaults', methods=['POST'])
@admin_required
def check_loan_defaults(principal):
    defaulted = loans.check_loan_defaults(principal.tenant_id)
    return jsonify({
        "status": "success",
        "message": f"{len(defaulted)} loans defaulted.",
        "defaulted_loan_ids": defaulted,
    })
