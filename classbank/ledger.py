"""
Ledger and transfer engine.

Every money movement goes through ``move_funds`` inside a ``unit_of_work``:
balance rows are locked (SELECT ... FOR UPDATE) in a fixed order, the
source is checked for sufficient funds, both legs are written, and an
immutable Transaction row is appended. The unit of work commits on success
and rolls back on any exception, so a failed operation never leaves a
partial debit behind.

Fan-out variants follow two different failure policies:
multi-transfer is best-effort per recipient, tax collection is
all-or-nothing and fully pre-validated.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from classbank.errors import (
    DependencyFailure,
    EconomyError,
    InsufficientFunds,
    NotFound,
    ValidationError,
)
from classbank.extensions import db
from classbank.models import Account, EconomicEntity, EntityAccount, Student, Transaction
from classbank.utils.constants import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, TRANSACTION_TYPES
from classbank.utils.helpers import money


# -------------------- UNIT OF WORK --------------------

@contextmanager
def unit_of_work():
    """
    Scope one business operation to one database transaction.

    Re-entrant: only the outermost scope commits or rolls back, so engine
    operations can be composed (a seat purchase moving funds, for example).
    """
    session = db.session
    depth = session.info.get('uow_depth', 0)
    session.info['uow_depth'] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except Exception:
        if depth == 0:
            session.rollback()
        raise
    finally:
        session.info['uow_depth'] = depth


# -------------------- BALANCE REFERENCES --------------------

@dataclass(frozen=True)
class BalanceRef:
    """Addresses one balance row: a student's or an entity's typed account."""
    holder: str
    holder_id: int
    account_type: str = 'checking'

    @classmethod
    def student(cls, student_id, account_type='checking'):
        return cls('student', student_id, account_type)

    @classmethod
    def entity(cls, entity_id, account_type='checking'):
        return cls('entity', entity_id, account_type)

    @property
    def sort_key(self):
        # Students before entities, then by id and account type
        return (0 if self.holder == 'student' else 1, self.holder_id, self.account_type)

    @property
    def label(self):
        return f"{self.holder} {self.holder_id} ({self.account_type})"


def get_entity(teacher_id, entity_type):
    """Return the tenant's entity of ``entity_type`` or raise DependencyFailure."""
    entity = EconomicEntity.query.filter_by(teacher_id=teacher_id, entity_type=entity_type).first()
    if entity is None:
        raise DependencyFailure(
            f'{entity_type} entity',
            f"The {entity_type} entity has not been initialized for this class.",
        )
    return entity


def resolve_party(teacher_id, party):
    """Turn a command Party (student id or entity type) into a BalanceRef."""
    if party.holder == 'entity':
        return BalanceRef.entity(get_entity(teacher_id, party.key).id, party.account_type)
    return BalanceRef.student(party.key, party.account_type)


def _lock_row(teacher_id, ref):
    if ref.holder == 'student':
        row = (
            Account.query
            .join(Student, Account.student_id == Student.id)
            .filter(
                Student.teacher_id == teacher_id,
                Account.student_id == ref.holder_id,
                Account.account_type == ref.account_type,
            )
            .with_for_update(of=Account)
            .populate_existing()
            .first()
        )
        if row is None:
            if Student.query.filter_by(id=ref.holder_id, teacher_id=teacher_id).first() is None:
                raise NotFound('student')
            raise DependencyFailure(f'{ref.account_type} account')
        return row

    row = (
        EntityAccount.query
        .join(EconomicEntity, EntityAccount.entity_id == EconomicEntity.id)
        .filter(
            EconomicEntity.teacher_id == teacher_id,
            EntityAccount.entity_id == ref.holder_id,
            EntityAccount.account_type == ref.account_type,
        )
        .with_for_update(of=EntityAccount)
        .populate_existing()
        .first()
    )
    if row is None:
        raise DependencyFailure(f'entity {ref.account_type} account')
    return row


def lock_balances(teacher_id, *refs):
    """Lock the rows behind ``refs`` in a deterministic order and return them by ref."""
    rows = {}
    for ref in sorted(set(ref for ref in refs if ref is not None), key=lambda r: r.sort_key):
        rows[ref] = _lock_row(teacher_id, ref)
    return rows


def _debit(row, amount, ref):
    balance = Decimal(row.balance or 0)
    if balance < amount:
        raise InsufficientFunds(required=amount, available=balance, holder=ref.label)
    row.balance = balance - amount


def _credit(row, amount):
    row.balance = Decimal(row.balance or 0) + amount


# -------------------- LEDGER RECORDS --------------------

def _side(ref):
    if ref is None:
        return None, None, None
    if ref.holder == 'student':
        return ref.holder_id, None, ref.account_type
    return None, ref.holder_id, ref.account_type


def record_transaction(teacher_id, source, destination, amount, transaction_type, description=None):
    """
    Append a ledger entry for a money movement that has already been applied.

    The entry is written in a savepoint. If it cannot be written the balances
    still move and the failure is logged for reconciliation.
    """
    from_student_id, from_entity_id, from_account_type = _side(source)
    to_student_id, to_entity_id, to_account_type = _side(destination)
    entry = Transaction(
        teacher_id=teacher_id,
        from_student_id=from_student_id,
        from_entity_id=from_entity_id,
        from_account_type=from_account_type,
        to_student_id=to_student_id,
        to_entity_id=to_entity_id,
        to_account_type=to_account_type,
        amount=amount,
        transaction_type=transaction_type,
        description=description,
        status='completed',
    )
    # Balance writes must fail loudly, not inside the savepoint below
    db.session.flush()
    try:
        with db.session.begin_nested():
            db.session.add(entry)
    except SQLAlchemyError:
        current_app.logger.error(
            f"Ledger entry could not be written for {transaction_type} of {amount} "
            f"(teacher {teacher_id}); balances were updated.",
            exc_info=True,
        )
        return None
    return entry


def move_funds(teacher_id, source, destination, amount, transaction_type, description=None):
    """
    Move ``amount`` from ``source`` to ``destination`` and record it.

    Either side may be None for money entering or leaving the economy
    ("system"). Must run inside a unit of work.
    """
    rows = lock_balances(teacher_id, source, destination)
    if source is not None:
        _debit(rows[source], amount, source)
    if destination is not None:
        _credit(rows[destination], amount)
    return record_transaction(teacher_id, source, destination, amount, transaction_type, description)


def balance_of(teacher_id, ref):
    return Decimal(_lock_row(teacher_id, ref).balance or 0)


# -------------------- SINGLE TRANSFERS --------------------

@dataclass
class TransferResult:
    amount: Decimal
    transaction_id: Optional[int]
    source_balance: Optional[Decimal] = None
    destination_balance: Optional[Decimal] = None

    def to_dict(self):
        return {
            'amount': money(self.amount),
            'transaction_id': self.transaction_id,
            'source_balance': money(self.source_balance) if self.source_balance is not None else None,
            'destination_balance': money(self.destination_balance) if self.destination_balance is not None else None,
        }


def transfer(teacher_id, cmd, transaction_type='transfer'):
    """Move money between two balance holders of one tenant."""
    with unit_of_work():
        source = resolve_party(teacher_id, cmd.source)
        destination = resolve_party(teacher_id, cmd.destination)
        if source == destination:
            raise ValidationError("Cannot transfer to the same account.", field='to_student_id')
        entry = move_funds(teacher_id, source, destination, cmd.amount, transaction_type, cmd.description)
        rows = lock_balances(teacher_id, source, destination)
        result = TransferResult(
            amount=cmd.amount,
            transaction_id=entry.id if entry else None,
            source_balance=Decimal(rows[source].balance),
            destination_balance=Decimal(rows[destination].balance),
        )
    current_app.logger.info(
        f"Transfer of {cmd.amount} from {source.label} to {destination.label} (teacher {teacher_id})"
    )
    return result


def account_transfer(teacher_id, student_id, cmd):
    """Move money between two accounts of the same student."""
    source = BalanceRef.student(student_id, cmd.from_account_type)
    destination = BalanceRef.student(student_id, cmd.to_account_type)
    with unit_of_work():
        entry = move_funds(
            teacher_id, source, destination, cmd.amount, 'account_transfer',
            f"{cmd.from_account_type} → {cmd.to_account_type}",
        )
        rows = lock_balances(teacher_id, source, destination)
        result = TransferResult(
            amount=cmd.amount,
            transaction_id=entry.id if entry else None,
            source_balance=Decimal(rows[source].balance),
            destination_balance=Decimal(rows[destination].balance),
        )
    current_app.logger.info(
        f"Student {student_id} moved {cmd.amount} from {cmd.from_account_type} to {cmd.to_account_type}"
    )
    return result


# -------------------- MULTI-TRANSFER (BEST EFFORT) --------------------

@dataclass
class LegResult:
    student_id: int
    amount: Decimal
    success: bool
    error: Optional[str] = None
    transaction_id: Optional[int] = None

    def to_dict(self):
        return {
            'student_id': self.student_id,
            'amount': money(self.amount),
            'success': self.success,
            'error': self.error,
            'transaction_id': self.transaction_id,
        }


@dataclass
class MultiTransferResult:
    legs: List[LegResult] = field(default_factory=list)

    @property
    def success_count(self):
        return sum(1 for leg in self.legs if leg.success)

    @property
    def failure_count(self):
        return len(self.legs) - self.success_count

    @property
    def total_transferred(self):
        return sum((leg.amount for leg in self.legs if leg.success), Decimal('0'))

    def to_dict(self):
        return {
            'success_count': self.success_count,
            'error_count': self.failure_count,
            'total_amount': money(self.total_transferred),
            'results': [leg.to_dict() for leg in self.legs],
        }


def multi_transfer(teacher_id, cmd):
    """
    One payer, many payees. Each recipient is its own savepoint: a failed
    recipient is reported and does not undo the recipients already paid.
    """
    source = BalanceRef.student(cmd.from_student_id, cmd.from_account_type)
    result = MultiTransferResult()
    with unit_of_work():
        available = balance_of(teacher_id, source)
        if available < cmd.total_amount:
            raise InsufficientFunds(required=cmd.total_amount, available=available, holder=source.label)

        label = 'equal-amount' if cmd.transfer_type == 'equal' else 'individual'
        description = f"{cmd.description} ({label} multi-transfer)" if cmd.description else f"{label} multi-transfer"
        outcomes = {}
        # Recipients are processed in id order to keep lock order stable
        for recipient in sorted(cmd.recipients, key=lambda r: r.student_id):
            destination = BalanceRef.student(recipient.student_id, recipient.account_type)
            try:
                with db.session.begin_nested():
                    entry = move_funds(teacher_id, source, destination, recipient.amount, 'transfer', description)
            except EconomyError as exc:
                current_app.logger.warning(
                    f"Multi-transfer leg to student {recipient.student_id} failed: {exc.message}"
                )
                outcomes[recipient.student_id] = LegResult(recipient.student_id, recipient.amount, False, exc.message)
                continue
            outcomes[recipient.student_id] = LegResult(
                recipient.student_id, recipient.amount, True, transaction_id=entry.id if entry else None
            )
        result.legs = [outcomes[recipient.student_id] for recipient in cmd.recipients]

    current_app.logger.info(
        f"Multi-transfer from student {cmd.from_student_id}: {result.success_count} succeeded, "
        f"{result.failure_count} failed, total {result.total_transferred} (teacher {teacher_id})"
    )
    return result


# -------------------- TAX COLLECTION (ALL OR NOTHING) --------------------

@dataclass
class TaxCollectionResult:
    collected: List[dict] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    @property
    def total_collected(self):
        return sum((item['amount'] for item in self.collected), Decimal('0'))

    def to_dict(self):
        return {
            'student_count': len(self.collected),
            'total_amount': money(self.total_collected),
            'collected': [
                {'student_id': item['student_id'], 'amount': money(item['amount'])}
                for item in self.collected
            ],
            'skipped_student_ids': self.skipped,
        }


def _tenant_students(teacher_id, student_ids=None):
    query = Student.query.filter_by(teacher_id=teacher_id)
    if student_ids is not None:
        query = query.filter(Student.id.in_(student_ids))
    students = query.order_by(Student.id).all()
    if student_ids is not None and len(students) != len(student_ids):
        missing = sorted(set(student_ids) - {student.id for student in students})
        raise NotFound('student', f"Students not found in this class: {missing}")
    return students


def collect_tax(teacher_id, cmd):
    """
    Levy tax on the selected students into the government's matching account.
    Every balance is checked before any is touched.
    """
    result = TaxCollectionResult()
    with unit_of_work():
        government = get_entity(teacher_id, 'government')
        students = _tenant_students(teacher_id, cmd.student_ids)
        refs = [BalanceRef.student(student.id, cmd.account_type) for student in students]
        treasury = BalanceRef.entity(government.id, cmd.account_type)
        rows = lock_balances(teacher_id, treasury, *refs)

        levies = []
        shortfalls = []
        for ref in refs:
            balance = Decimal(rows[ref].balance or 0)
            owed = cmd.tax_for(balance)
            if owed <= 0:
                result.skipped.append(ref.holder_id)
                continue
            if balance < owed:
                shortfalls.append((ref, owed, balance))
            levies.append((ref, owed))

        if shortfalls:
            ref, owed, balance = shortfalls[0]
            raise InsufficientFunds(
                required=owed,
                available=balance,
                holder=ref.label,
                message=f"{len(shortfalls)} student(s) cannot pay the tax; no tax was collected.",
            )
        if not levies:
            raise ValidationError("No student owes any tax.")

        description = cmd.description or (
            f"Tax {cmd.value}%" if cmd.tax_type == 'percentage' else f"Tax {cmd.value}"
        )
        for ref, owed in levies:
            _debit(rows[ref], owed, ref)
            _credit(rows[treasury], owed)
            record_transaction(teacher_id, ref, treasury, owed, 'tax_payment', description)
            result.collected.append({'student_id': ref.holder_id, 'amount': owed})

    current_app.logger.info(
        f"Collected {result.total_collected} tax from {len(result.collected)} students (teacher {teacher_id})"
    )
    return result


# -------------------- ALLOWANCE --------------------

@dataclass
class AllowanceResult:
    paid: List[dict] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    @property
    def total_paid(self):
        return sum((item['amount'] for item in self.paid), Decimal('0'))

    def to_dict(self):
        return {
            'student_count': len(self.paid),
            'total_amount': money(self.total_paid),
            'paid': [{'student_id': item['student_id'], 'amount': money(item['amount'])} for item in self.paid],
            'skipped_student_ids': self.skipped,
        }


def distribute_allowance(teacher_id, cmd):
    """Credit each selected student a fixed amount or their weekly allowance."""
    result = AllowanceResult()
    with unit_of_work():
        students = _tenant_students(teacher_id, cmd.student_ids)
        payouts = []
        for student in students:
            amount = Decimal(cmd.amount_for(student))
            if amount <= 0:
                result.skipped.append(student.id)
                continue
            payouts.append((student, amount))
        if not payouts:
            raise ValidationError("No student has an allowance to pay.")

        source = None
        if cmd.from_government:
            source = BalanceRef.entity(get_entity(teacher_id, 'government').id, 'checking')
            total = sum((amount for _, amount in payouts), Decimal('0'))
            available = balance_of(teacher_id, source)
            if available < total:
                raise InsufficientFunds(required=total, available=available, holder='government')

        description = cmd.description or (
            'Weekly allowance' if cmd.use_weekly_allowance else 'Allowance'
        )
        for student, amount in payouts:
            destination = BalanceRef.student(student.id, cmd.account_type)
            move_funds(teacher_id, source, destination, amount, 'allowance', description)
            result.paid.append({'student_id': student.id, 'amount': amount})

    current_app.logger.info(
        f"Paid allowance of {result.total_paid} to {len(result.paid)} students (teacher {teacher_id})"
    )
    return result


# -------------------- HISTORY --------------------

def list_transactions(teacher_id, student_id=None, transaction_type=None, limit=None):
    """Newest-first ledger entries for a tenant, optionally for one student."""
    limit = DEFAULT_PAGE_LIMIT if limit is None else max(1, min(int(limit), MAX_PAGE_LIMIT))
    query = Transaction.query.filter(Transaction.teacher_id == teacher_id)
    if student_id is not None:
        query = query.filter(
            or_(Transaction.from_student_id == student_id, Transaction.to_student_id == student_id)
        )
    if transaction_type:
        if transaction_type not in TRANSACTION_TYPES:
            raise ValidationError(
                f"'type' must be one of: {', '.join(TRANSACTION_TYPES)}.", field='type'
            )
        query = query.filter(Transaction.transaction_type == transaction_type)
    return query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit).all()
