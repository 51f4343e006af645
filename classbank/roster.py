"""
Students, their accounts, and the tenant's economic entities.
"""

from decimal import Decimal

from flask import current_app

from classbank.errors import Conflict, NotFound
from classbank.extensions import db
from classbank.ledger import BalanceRef, lock_balances, move_funds, record_transaction, unit_of_work
from classbank.models import (
    Account,
    EconomicEntity,
    EntityAccount,
    Seat,
    Student,
)
from classbank.utils.constants import (
    ACCOUNT_TYPES,
    ENTITY_DISPLAY_NAMES,
    ENTITY_INITIAL_BALANCES,
    ENTITY_TYPES,
    MAX_CREDIT_SCORE,
    MIN_CREDIT_SCORE,
)
from classbank.utils.helpers import money


def get_student(teacher_id, student_id):
    """Tenant-scoped lookup; a student of another teacher is simply not found."""
    student = Student.query.filter_by(id=student_id, teacher_id=teacher_id).first()
    if student is None:
        raise NotFound('student')
    return student


def student_summary(student):
    from classbank.loans import credit_tier_for
    tier = credit_tier_for(student.credit_score)
    return {
        'id': student.id,
        'name': student.name,
        'credit_score': student.credit_score,
        'credit_grade': tier.grade if tier else None,
        'weekly_allowance': money(student.weekly_allowance),
        'accounts': {account.account_type: money(account.balance) for account in student.accounts},
        'total_balance': money(student.total_balance),
    }


def create_student(teacher_id, cmd):
    """Create a student with zeroed checking, savings and investment accounts."""
    with unit_of_work():
        student = Student(
            teacher_id=teacher_id,
            name=cmd.name,
            credit_score=cmd.credit_score,
            weekly_allowance=cmd.weekly_allowance,
        )
        student.accounts = [Account(account_type=account_type, balance=Decimal('0')) for account_type in ACCOUNT_TYPES]
        db.session.add(student)
        db.session.flush()
        if cmd.initial_balance > 0:
            move_funds(
                teacher_id, None, BalanceRef.student(student.id), cmd.initial_balance,
                'allowance', 'Opening balance',
            )
    current_app.logger.info(f"Created student {student.id} for teacher {teacher_id}")
    return student


def update_student(teacher_id, student_id, cmd):
    with unit_of_work():
        student = get_student(teacher_id, student_id)
        if cmd.name is not None:
            student.name = cmd.name
        if cmd.weekly_allowance is not None:
            student.weekly_allowance = cmd.weekly_allowance
    current_app.logger.info(f"Updated student {student_id} for teacher {teacher_id}")
    return student


def _closure_destination(teacher_id, account_type):
    government = EconomicEntity.query.filter_by(teacher_id=teacher_id, entity_type='government').first()
    if government is None or government.get_account(account_type) is None:
        return None
    return BalanceRef.entity(government.id, account_type)


def delete_student(teacher_id, student_id):
    """
    Delete a student with their accounts, loans, holdings and quiz attempts.

    Remaining balances are first moved to the government as account_closure
    entries, so the ledger accounts for every unit that leaves. Seats they
    own go back on the market at the current price; ledger rows stay and
    lose their student reference.
    """
    from classbank.market import current_seat_price

    with unit_of_work():
        student = get_student(teacher_id, student_id)
        closed = Decimal('0')
        refs = [BalanceRef.student(student.id, account.account_type) for account in student.accounts]
        for ref, row in lock_balances(teacher_id, *refs).items():
            balance = Decimal(row.balance or 0)
            if balance <= 0:
                continue
            move_funds(
                teacher_id,
                ref,
                _closure_destination(teacher_id, ref.account_type),
                balance,
                'account_closure',
                f"Account closed: student {student.id} {ref.account_type}",
            )
            closed += balance
        owned = Seat.query.filter_by(teacher_id=teacher_id, owner_id=student.id).with_for_update().all()
        db.session.delete(student)
        db.session.flush()
        if owned:
            price = current_seat_price(teacher_id)
            for seat in owned:
                seat.owner_id = None
                seat.purchase_price = None
                seat.purchase_date = None
                seat.is_available = True
                seat.current_price = price
    current_app.logger.info(
        f"Deleted student {student_id} for teacher {teacher_id}; closed balances of {closed}, "
        f"released {len(owned)} seat(s)"
    )


def initialize_entities(teacher_id):
    """Create whichever of government, bank and securities the tenant is missing."""
    with unit_of_work():
        existing = {
            entity.entity_type
            for entity in EconomicEntity.query.filter_by(teacher_id=teacher_id).all()
        }
        missing = [entity_type for entity_type in ENTITY_TYPES if entity_type not in existing]
        if not missing:
            raise Conflict("All economic entities are already initialized.")

        created = []
        for entity_type in missing:
            entity = EconomicEntity(
                teacher_id=teacher_id,
                entity_type=entity_type,
                name=ENTITY_DISPLAY_NAMES[entity_type],
            )
            entity.accounts = [
                EntityAccount(account_type=account_type, balance=Decimal('0'))
                for account_type in ACCOUNT_TYPES
            ]
            db.session.add(entity)
            db.session.flush()
            opening = ENTITY_INITIAL_BALANCES[entity_type]
            if opening > 0:
                move_funds(
                    teacher_id, None, BalanceRef.entity(entity.id), opening,
                    'transfer', f"{entity.name} opening balance",
                )
            created.append(entity)
    current_app.logger.info(
        f"Initialized entities {', '.join(e.entity_type for e in created)} for teacher {teacher_id}"
    )
    return created


def entity_summary(entity):
    return {
        'id': entity.id,
        'entity_type': entity.entity_type,
        'name': entity.name,
        'balance': money(entity.balance),
        'accounts': {account.account_type: money(account.balance) for account in entity.accounts},
    }


def clamp_credit_score(score):
    return max(MIN_CREDIT_SCORE, min(MAX_CREDIT_SCORE, score))


def apply_credit_change(student, delta, reason):
    """
    Shift a student's credit score and record it in the ledger as a
    zero-amount credit_adjustment. Caller owns the unit of work.
    """
    old_score = student.credit_score
    student.credit_score = clamp_credit_score(old_score + delta)
    record_transaction(
        student.teacher_id,
        None,
        BalanceRef.student(student.id),
        Decimal('0'),
        'credit_adjustment',
        f"Credit score {old_score} → {student.credit_score}: {reason}",
    )
    return old_score, student.credit_score


def adjust_credit_score(teacher_id, student_id, cmd):
    with unit_of_work():
        student = get_student(teacher_id, student_id)
        old_score, new_score = apply_credit_change(student, cmd.adjustment, cmd.reason or 'Teacher adjustment')
    current_app.logger.info(
        f"Credit score of student {student_id} changed {old_score} → {new_score} (teacher {teacher_id})"
    )
    return old_score, new_score
