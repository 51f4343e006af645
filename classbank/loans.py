"""
Loan engine: credit tiers, origination, weekly amortized repayment, payoff
and the default policy.

Interest is accrued on the current remaining balance at annual_rate/100/12
per weekly payment, the same rate used to amortize the weekly installment
at origination, so a borrower paying ``weekly_payment`` every week clears
the loan in ``duration_weeks`` payments.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Optional

from flask import current_app

from classbank.errors import (
    Conflict,
    InsufficientFunds,
    NotFound,
    PaymentBelowInterest,
    ValidationError,
)
from classbank.extensions import db
from classbank.ledger import BalanceRef, balance_of, get_entity, move_funds, unit_of_work
from classbank.models import Loan, LoanPayment, Student
from classbank.roster import apply_credit_change
from classbank.utils.constants import (
    CREDIT_RATE_TABLE,
    EARLY_REPAYMENT_FEE_RATIO,
    LOAN_DEFAULT_CREDIT_PENALTY,
    LOAN_DEFAULT_GRACE_DAYS,
    LOAN_PAYMENT_INTERVAL_DAYS,
    MAX_ACTIVE_LOANS,
)
from classbank.utils.helpers import get_setting, money

WHOLE = Decimal('1')


# -------------------- CREDIT TIERS --------------------

@dataclass(frozen=True)
class CreditTier:
    min_score: int
    max_score: int
    annual_rate: Decimal
    max_amount: int
    max_weeks: int
    grade: str

    def to_dict(self):
        return {
            'min_score': self.min_score,
            'max_score': self.max_score,
            'annual_rate': float(self.annual_rate),
            'max_amount': self.max_amount,
            'max_weeks': self.max_weeks,
            'grade': self.grade,
        }


CREDIT_TIERS = tuple(CreditTier(*row) for row in CREDIT_RATE_TABLE)


def credit_tier_for(score) -> Optional[CreditTier]:
    """Look up the rate, limits and grade for a credit score."""
    if score is None:
        return None
    for tier in CREDIT_TIERS:
        if tier.min_score <= score <= tier.max_score:
            return tier
    return None


# -------------------- ARITHMETIC --------------------

def period_rate(annual_rate):
    return Decimal(annual_rate) / Decimal('100') / Decimal('12')


def weekly_payment_for(principal, annual_rate, weeks):
    """
    Fixed installment amortizing ``principal`` over ``weeks`` payments,
    rounded up to a whole unit.
    """
    principal = Decimal(principal)
    rate = period_rate(annual_rate)
    if rate == 0:
        payment = principal / Decimal(weeks)
    else:
        payment = principal * rate / (1 - (1 + rate) ** -weeks)
    return payment.quantize(WHOLE, rounding=ROUND_CEILING)


def interest_due(remaining_balance, annual_rate):
    """One week's interest on the remaining balance, rounded half up."""
    return (Decimal(remaining_balance) * period_rate(annual_rate)).quantize(WHOLE, rounding=ROUND_HALF_UP)


def early_repayment_fee(remaining_balance, annual_rate, remaining_weeks):
    ratio = Decimal(str(get_setting('EARLY_REPAYMENT_FEE_RATIO', EARLY_REPAYMENT_FEE_RATIO)))
    remaining_interest = Decimal(remaining_balance) * period_rate(annual_rate) * Decimal(max(remaining_weeks, 0))
    return (remaining_interest * ratio).quantize(WHOLE, rounding=ROUND_HALF_UP)


# -------------------- ORIGINATION --------------------

def _get_loan(teacher_id, student_id, loan_id):
    loan = (
        Loan.query
        .filter_by(id=loan_id, teacher_id=teacher_id, student_id=student_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if loan is None:
        raise NotFound('loan')
    return loan


def originate_loan(teacher_id, student_id, cmd):
    """
    Lend ``cmd.amount`` from the tenant's bank to the student's checking
    account at the rate of the student's credit tier.
    """
    with unit_of_work():
        student = (
            Student.query
            .filter_by(id=student_id, teacher_id=teacher_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if student is None:
            raise NotFound('student')

        tier = credit_tier_for(student.credit_score)
        if tier is None:
            raise ValidationError("No loan products are available for this credit score.")
        if cmd.amount > tier.max_amount:
            raise ValidationError(
                f"Maximum loan amount for your credit grade is {tier.max_amount}.", field='amount'
            )
        if cmd.weeks > tier.max_weeks:
            raise ValidationError(
                f"Maximum loan duration for your credit grade is {tier.max_weeks} weeks.",
                field='duration_weeks',
            )

        if Loan.query.filter_by(student_id=student.id, status='defaulted').count():
            raise Conflict("New loans are unavailable while a loan is in default.")
        max_active = get_setting('MAX_ACTIVE_LOANS', MAX_ACTIVE_LOANS)
        if Loan.query.filter_by(student_id=student.id, status='active').count() >= max_active:
            raise Conflict(f"You can have at most {max_active} active loans.")

        weekly = weekly_payment_for(cmd.amount, tier.annual_rate, cmd.weeks)
        now = datetime.now(timezone.utc)
        loan = Loan(
            student_id=student.id,
            teacher_id=teacher_id,
            amount=cmd.amount,
            interest_rate=tier.annual_rate,
            duration_weeks=cmd.weeks,
            weekly_payment=weekly,
            total_payment=weekly * cmd.weeks,
            remaining_balance=cmd.amount,
            remaining_weeks=cmd.weeks,
            status='active',
            next_payment_due=now + timedelta(days=LOAN_PAYMENT_INTERVAL_DAYS),
            created_at=now,
        )
        db.session.add(loan)

        bank = BalanceRef.entity(get_entity(teacher_id, 'bank').id, 'checking')
        move_funds(
            teacher_id, bank, BalanceRef.student(student.id, 'checking'), cmd.amount,
            'loan_disbursement',
            f"Loan of {cmd.amount} over {cmd.weeks} weeks at {tier.annual_rate}%",
        )
    current_app.logger.info(
        f"Loan {loan.id} of {cmd.amount} originated for student {student_id} (teacher {teacher_id})"
    )
    return loan


# -------------------- REPAYMENT --------------------

@dataclass
class RepaymentResult:
    loan_id: int
    amount: Decimal
    interest: Decimal
    principal: Decimal
    early_repayment_fee: Decimal
    remaining_balance: Decimal
    remaining_weeks: int
    payment_type: str
    completed: bool

    def to_dict(self):
        return {
            'loan_id': self.loan_id,
            'amount': money(self.amount),
            'interest': money(self.interest),
            'principal': money(self.principal),
            'early_repayment_fee': money(self.early_repayment_fee),
            'remaining_balance': money(self.remaining_balance),
            'remaining_weeks': self.remaining_weeks,
            'payment_type': self.payment_type,
            'completed': self.completed,
        }


def _settle(teacher_id, loan, amount, interest, principal, fee, payment_type, description):
    """Take ``amount`` from the student, pay the bank, and roll the loan forward."""
    student_ref = BalanceRef.student(loan.student_id, 'checking')
    available = balance_of(teacher_id, student_ref)
    if available < amount:
        raise InsufficientFunds(required=amount, available=available, holder=student_ref.label)

    remaining = Decimal(loan.remaining_balance) - principal
    completed = remaining <= 0
    payment_week = loan.duration_weeks - loan.remaining_weeks + 1

    bank = BalanceRef.entity(get_entity(teacher_id, 'bank').id, 'checking')
    move_funds(teacher_id, student_ref, bank, amount, 'loan_repayment', description)

    db.session.add(LoanPayment(
        loan_id=loan.id,
        student_id=loan.student_id,
        amount=amount,
        principal_amount=principal,
        interest_amount=interest,
        early_repayment_fee=fee,
        remaining_balance=max(remaining, Decimal('0')),
        payment_week=payment_week,
        payment_type=payment_type,
    ))

    now = datetime.now(timezone.utc)
    if completed:
        loan.remaining_balance = Decimal('0')
        loan.remaining_weeks = 0
        loan.status = 'completed'
        loan.completed_at = now
    else:
        loan.remaining_balance = remaining
        loan.remaining_weeks = max(loan.remaining_weeks - 1, 0)
        base = loan.next_payment_due or now
        loan.next_payment_due = base + timedelta(days=LOAN_PAYMENT_INTERVAL_DAYS)

    return RepaymentResult(
        loan_id=loan.id,
        amount=amount,
        interest=interest,
        principal=principal,
        early_repayment_fee=fee,
        remaining_balance=Decimal(loan.remaining_balance),
        remaining_weeks=loan.remaining_weeks,
        payment_type=payment_type,
        completed=completed,
    )


def _payoff(teacher_id, loan):
    remaining = Decimal(loan.remaining_balance)
    fee = early_repayment_fee(remaining, loan.interest_rate, loan.remaining_weeks)
    return _settle(
        teacher_id, loan, remaining + fee, Decimal('0'), remaining, fee, 'full_repayment',
        f"Loan {loan.id} paid in full (principal {remaining}, early repayment fee {fee})",
    )


def repay_loan(teacher_id, student_id, loan_id, cmd):
    """
    Apply one repayment. Interest for the week comes first; a payment that
    cannot cover it is rejected. A payment covering the whole remaining
    balance settles the loan through the payoff path.
    """
    with unit_of_work():
        loan = _get_loan(teacher_id, student_id, loan_id)
        if loan.status != 'active':
            raise Conflict(f"Loan is {loan.status}, not active.")

        remaining = Decimal(loan.remaining_balance)
        if cmd.amount >= remaining:
            result = _payoff(teacher_id, loan)
        else:
            interest = interest_due(remaining, loan.interest_rate)
            actual = min(cmd.amount, remaining)
            principal = actual - interest
            if principal < 0:
                raise PaymentBelowInterest(minimum_payment=interest)
            payment_type = 'scheduled' if actual == Decimal(loan.weekly_payment) else 'early'
            week = loan.duration_weeks - loan.remaining_weeks + 1
            result = _settle(
                teacher_id, loan, actual, interest, principal, Decimal('0'), payment_type,
                f"Loan {loan.id} payment week {week} (interest {interest}, principal {principal})",
            )
    current_app.logger.info(
        f"Loan {loan_id} repayment of {result.amount} by student {student_id}; "
        f"remaining {result.remaining_balance} (teacher {teacher_id})"
    )
    return result


def payoff_loan(teacher_id, student_id, loan_id):
    """Settle the whole remaining balance plus the early repayment fee."""
    with unit_of_work():
        loan = _get_loan(teacher_id, student_id, loan_id)
        if loan.status != 'active':
            raise Conflict(f"Loan is {loan.status}, not active.")
        result = _payoff(teacher_id, loan)
    current_app.logger.info(
        f"Loan {loan_id} paid off by student {student_id} for {result.amount} (teacher {teacher_id})"
    )
    return result


# -------------------- LISTING --------------------

def loan_overview(teacher_id, student_id):
    student = Student.query.filter_by(id=student_id, teacher_id=teacher_id).first()
    if student is None:
        raise NotFound('student')
    loans = student.loans.order_by(Loan.created_at.desc(), Loan.id.desc()).all()
    tier = credit_tier_for(student.credit_score)
    active = [loan for loan in loans if loan.status == 'active']
    return {
        'credit_score': student.credit_score,
        'credit_tier': tier.to_dict() if tier else None,
        'active_count': len(active),
        'outstanding_balance': money(sum((Decimal(loan.remaining_balance) for loan in active), Decimal('0'))),
        'loans': [loan.to_dict() for loan in loans],
    }


# -------------------- DEFAULTS --------------------

def check_loan_defaults(teacher_id=None, now=None):
    """
    Mark active loans more than the grace period past due as defaulted and
    apply the credit penalty. No money moves; the balance stays owed.
    """
    now = now or datetime.now(timezone.utc)
    grace_days = get_setting('LOAN_DEFAULT_GRACE_DAYS', LOAN_DEFAULT_GRACE_DAYS)
    penalty = get_setting('LOAN_DEFAULT_CREDIT_PENALTY', LOAN_DEFAULT_CREDIT_PENALTY)
    cutoff = now - timedelta(days=grace_days)

    defaulted = []
    with unit_of_work():
        query = Loan.query.filter(Loan.status == 'active', Loan.next_payment_due < cutoff)
        if teacher_id is not None:
            query = query.filter(Loan.teacher_id == teacher_id)
        for loan in query.order_by(Loan.id).with_for_update().all():
            loan.status = 'defaulted'
            loan.defaulted_at = now
            apply_credit_change(loan.student, -penalty, f"Loan {loan.id} defaulted")
            defaulted.append(loan.id)

    if defaulted:
        current_app.logger.warning(f"Defaulted loans {defaulted} (teacher {teacher_id or 'all'})")
    return defaulted
