"""
Tests for the ledger and transfer engine.

Covers:
- Conservation of money across single transfers
- Overdraft rejection leaving balances untouched
- Tenant isolation of transfer targets
- Best-effort multi-transfer with per-recipient results
- All-or-nothing tax collection
- Allowance distribution from the system or the government
- Write-once ledger entries
- Account closure when a student is deleted
"""

from decimal import Decimal

import pytest

from classbank import ledger
from classbank.commands import (
    AccountTransferCmd,
    AllowanceCmd,
    MultiTransferCmd,
    Party,
    Recipient,
    TaxCollectionCmd,
    TransferCmd,
)
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from classbank import roster
from classbank.errors import InsufficientFunds, NotFound, ValidationError
from classbank.extensions import db
from classbank.ledger import get_entity
from classbank.models import Account, EconomicEntity, EntityAccount, Student, Transaction
from conftest import checking, create_student


def _transfer(source_id, destination_id, amount):
    return TransferCmd(
        source=Party('student', source_id),
        destination=Party('student', destination_id),
        amount=Decimal(str(amount)),
    )


def test_transfer_conserves_money(teacher, make_student):
    alice = make_student("Alice", 10000)
    bob = make_student("Bob", 500)

    before = checking(alice) + checking(bob)
    result = ledger.transfer(teacher.id, _transfer(alice.id, bob.id, 2500))

    assert checking(alice) == Decimal('7500')
    assert checking(bob) == Decimal('3000')
    assert checking(alice) + checking(bob) == before
    assert result.source_balance == Decimal('7500')

    entry = db.session.get(Transaction, result.transaction_id)
    assert entry.from_student_id == alice.id
    assert entry.to_student_id == bob.id
    assert entry.amount == Decimal('2500')
    assert entry.transaction_type == 'transfer'


def test_transfer_overdraft_rejected_and_balances_unchanged(teacher, make_student):
    alice = make_student("Alice", 1000)
    bob = make_student("Bob", 0)
    entries_before = Transaction.query.count()

    with pytest.raises(InsufficientFunds) as exc_info:
        ledger.transfer(teacher.id, _transfer(alice.id, bob.id, 1000.01))

    assert exc_info.value.required == Decimal('1000.01')
    assert exc_info.value.available == Decimal('1000')
    assert checking(alice) == Decimal('1000')
    assert checking(bob) == Decimal('0')
    assert Transaction.query.count() == entries_before


def test_transfer_to_another_teachers_student_is_not_found(teacher, other_teacher, make_student):
    alice = make_student("Alice", 1000)
    outsider = create_student(other_teacher, "Outsider", 0)

    with pytest.raises(NotFound):
        ledger.transfer(teacher.id, _transfer(alice.id, outsider.id, 100))

    assert checking(alice) == Decimal('1000')
    assert checking(outsider) == Decimal('0')


def test_transfer_from_entity_to_student(teacher, make_student):
    alice = make_student("Alice", 0)
    government = get_entity(teacher.id, 'government')
    cmd = TransferCmd(
        source=Party('entity', 'government'),
        destination=Party('student', alice.id),
        amount=Decimal('5000'),
        description="Grant",
    )

    ledger.transfer(teacher.id, cmd)

    db.session.expire_all()
    assert checking(alice) == Decimal('5000')
    assert government.get_account('checking').balance == Decimal('99995000')


def test_account_transfer_moves_between_own_accounts(teacher, make_student):
    alice = make_student("Alice", 3000)

    ledger.account_transfer(teacher.id, alice.id, AccountTransferCmd('checking', 'savings', Decimal('1200')))

    db.session.expire_all()
    assert alice.get_account('checking').balance == Decimal('1800')
    assert alice.get_account('savings').balance == Decimal('1200')
    assert alice.total_balance == Decimal('3000')


def test_multi_transfer_reports_each_recipient(teacher, other_teacher, make_student):
    sender = make_student("Sender", 10000)
    bob = make_student("Bob", 0)
    carol = make_student("Carol", 0)
    outsider = create_student(other_teacher, "Outsider", 0)

    cmd = MultiTransferCmd(
        from_student_id=sender.id,
        from_account_type='checking',
        recipients=(
            Recipient(bob.id, Decimal('1000')),
            Recipient(outsider.id, Decimal('1000')),
            Recipient(carol.id, Decimal('2000')),
        ),
    )
    result = ledger.multi_transfer(teacher.id, cmd)

    assert [leg.student_id for leg in result.legs] == [bob.id, outsider.id, carol.id]
    assert [leg.success for leg in result.legs] == [True, False, True]
    assert result.success_count == 2
    assert result.failure_count == 1
    assert result.total_transferred == Decimal('3000')

    assert checking(sender) == Decimal('7000')
    assert checking(bob) == Decimal('1000')
    assert checking(carol) == Decimal('2000')
    assert checking(outsider) == Decimal('0')


def test_multi_transfer_rejects_when_total_exceeds_balance(teacher, make_student):
    sender = make_student("Sender", 1500)
    bob = make_student("Bob", 0)
    carol = make_student("Carol", 0)

    cmd = MultiTransferCmd(
        from_student_id=sender.id,
        from_account_type='checking',
        recipients=(Recipient(bob.id, Decimal('1000')), Recipient(carol.id, Decimal('1000'))),
        transfer_type='equal',
    )
    with pytest.raises(InsufficientFunds):
        ledger.multi_transfer(teacher.id, cmd)

    assert checking(sender) == Decimal('1500')
    assert checking(bob) == Decimal('0')


def test_percentage_tax_collects_into_government(teacher, make_student):
    alice = make_student("Alice", 10000)
    bob = make_student("Bob", 2500)
    government = get_entity(teacher.id, 'government')
    treasury_before = government.get_account('checking').balance

    result = ledger.collect_tax(teacher.id, TaxCollectionCmd('percentage', Decimal('10')))

    assert result.total_collected == Decimal('1250')
    assert checking(alice) == Decimal('9000')
    assert checking(bob) == Decimal('2250')
    db.session.expire_all()
    assert government.get_account('checking').balance == treasury_before + Decimal('1250')
    assert Transaction.query.filter_by(transaction_type='tax_payment').count() == 2


def test_fixed_tax_is_all_or_nothing(teacher, make_student):
    alice = make_student("Alice", 10000)
    bob = make_student("Bob", 300)

    with pytest.raises(InsufficientFunds) as exc_info:
        ledger.collect_tax(teacher.id, TaxCollectionCmd('fixed', Decimal('500')))

    assert "1 student(s)" in exc_info.value.message
    assert checking(alice) == Decimal('10000')
    assert checking(bob) == Decimal('300')
    assert Transaction.query.filter_by(transaction_type='tax_payment').count() == 0


def test_tax_with_nothing_owed_is_rejected(teacher, make_student):
    make_student("Alice", 0)

    with pytest.raises(ValidationError):
        ledger.collect_tax(teacher.id, TaxCollectionCmd('percentage', Decimal('10')))


def test_weekly_allowance_paid_from_system(teacher, make_student):
    alice = make_student("Alice", 0, weekly_allowance=3000)
    bob = make_student("Bob", 0)

    result = ledger.distribute_allowance(teacher.id, AllowanceCmd())

    assert [item['student_id'] for item in result.paid] == [alice.id]
    assert result.skipped == [bob.id]
    assert checking(alice) == Decimal('3000')


def test_allowance_from_government_checks_treasury(teacher, make_student):
    make_student("Alice", 0)
    government = get_entity(teacher.id, 'government')
    account = government.get_account('checking')
    account.balance = Decimal('100')
    db.session.commit()

    with pytest.raises(InsufficientFunds):
        ledger.distribute_allowance(teacher.id, AllowanceCmd(amount=Decimal('500'), from_government=True))

    db.session.expire_all()
    assert government.get_account('checking').balance == Decimal('100')


def test_transaction_entries_are_write_once(teacher, make_student):
    alice = make_student("Alice", 0)
    bob = make_student("Bob", 0)
    ledger.distribute_allowance(teacher.id, AllowanceCmd(amount=Decimal('100'), student_ids=(alice.id,)))
    entry = Transaction.query.filter_by(to_student_id=alice.id, transaction_type='allowance').first()

    entry.description = "rewritten"
    with pytest.raises(ValueError):
        db.session.flush()
    db.session.rollback()


def test_list_transactions_filters_by_student(teacher, make_student):
    alice = make_student("Alice", 1000)
    bob = make_student("Bob", 1000)
    ledger.transfer(teacher.id, _transfer(alice.id, bob.id, 100))

    entries = ledger.list_transactions(teacher.id, student_id=alice.id)

    assert {entry.transaction_type for entry in entries} == {'allowance', 'transfer'}
    assert all(alice.id in (entry.from_student_id, entry.to_student_id) for entry in entries)
    assert len(ledger.list_transactions(teacher.id, transaction_type='transfer', limit=1)) == 1


def test_list_transactions_rejects_unknown_type(teacher):
    with pytest.raises(ValidationError) as exc_info:
        ledger.list_transactions(teacher.id, transaction_type='brokerage_fee')

    assert exc_info.value.details['field'] == 'type'


def test_unknown_transaction_type_violates_check(teacher):
    db.session.add(Transaction(
        teacher_id=teacher.id,
        amount=Decimal('1'),
        transaction_type='bogus',
        status='completed',
    ))
    with pytest.raises(IntegrityError):
        db.session.flush()
    db.session.rollback()


def test_transaction_entries_cannot_be_deleted(teacher, make_student):
    alice = make_student("Alice", 100)
    entry = Transaction.query.filter_by(to_student_id=alice.id).first()

    db.session.delete(entry)
    with pytest.raises(ValueError):
        db.session.flush()
    db.session.rollback()

    assert db.session.get(Transaction, entry.id) is not None


def test_failed_ledger_write_still_moves_balances(teacher, make_student):
    alice = make_student("Alice", 1000)
    bob = make_student("Bob", 0)
    entries_before = Transaction.query.count()

    def reject_insert(mapper, connection, target):
        raise SQLAlchemyError("ledger table unavailable")

    event.listen(Transaction, 'before_insert', reject_insert)
    try:
        result = ledger.transfer(teacher.id, _transfer(alice.id, bob.id, 100))
    finally:
        event.remove(Transaction, 'before_insert', reject_insert)

    assert result.transaction_id is None
    assert checking(alice) == Decimal('900')
    assert checking(bob) == Decimal('100')
    assert Transaction.query.count() == entries_before


def _tenant_total(teacher_id):
    db.session.expire_all()
    student_total = sum(
        (account.balance for account in Account.query.join(Student).filter(Student.teacher_id == teacher_id)),
        Decimal('0'),
    )
    entity_total = sum(
        (account.balance for account in
         EntityAccount.query.join(EconomicEntity).filter(EconomicEntity.teacher_id == teacher_id)),
        Decimal('0'),
    )
    return student_total + entity_total


def test_deleting_student_moves_balances_to_government(teacher, make_student):
    alice = make_student("Alice", 1000)
    make_student("Bob", 500)
    ledger.account_transfer(teacher.id, alice.id, AccountTransferCmd('checking', 'savings', Decimal('300')))
    total_before = _tenant_total(teacher.id)
    entries_before = Transaction.query.count()

    roster.delete_student(teacher.id, alice.id)

    assert _tenant_total(teacher.id) == total_before
    closures = Transaction.query.filter_by(transaction_type='account_closure').all()
    assert Transaction.query.count() == entries_before + 2
    assert sorted(entry.amount for entry in closures) == [Decimal('300'), Decimal('700')]
    assert all(entry.from_student_id is None for entry in closures)

    government = get_entity(teacher.id, 'government')
    assert government.get_account('checking').balance == Decimal('100000700')
    assert government.get_account('savings').balance == Decimal('300')


def test_deleting_student_without_balance_writes_no_closure(teacher, make_student):
    alice = make_student("Alice", 0)

    roster.delete_student(teacher.id, alice.id)

    assert Transaction.query.filter_by(transaction_type='account_closure').count() == 0
