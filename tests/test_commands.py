"""
Tests for request payload parsing into command objects.
"""

from datetime import date
from decimal import Decimal

import pytest

from classbank.commands import (
    AllowanceCmd,
    CreditAdjustmentCmd,
    MultiTransferCmd,
    OriginateLoanCmd,
    PublishQuizCmd,
    RepayLoanCmd,
    SeatLayoutCmd,
    SubmitQuizCmd,
    TaxCollectionCmd,
    TradeAssetCmd,
    TransferCmd,
    UpdateStudentCmd,
    UpsertAssetCmd,
    parse_amount,
)
from classbank.errors import ValidationError


@pytest.mark.parametrize("value", [None, True, "abc", "NaN", "Infinity", 0, -5])
def test_parse_amount_rejects_bad_values(value):
    with pytest.raises(ValidationError):
        parse_amount(value)


def test_parse_amount_rounds_to_cents():
    assert parse_amount("10.005") == Decimal('10.01')
    assert parse_amount(0, allow_zero=True) == Decimal('0.00')


def test_transfer_requires_exactly_one_destination():
    with pytest.raises(ValidationError) as exc_info:
        TransferCmd.from_payload({'from_student_id': 1, 'amount': 10})
    assert exc_info.value.details['field'] == 'to_student_id'

    with pytest.raises(ValidationError):
        TransferCmd.from_payload({
            'from_student_id': 1, 'to_student_id': 2, 'to_entity_type': 'bank', 'amount': 10,
        })


def test_transfer_to_same_account_rejected():
    with pytest.raises(ValidationError):
        TransferCmd.from_payload({'from_student_id': 1, 'to_student_id': 1, 'amount': 10})


def test_transfer_between_accounts_of_one_student_allowed():
    cmd = TransferCmd.from_payload({
        'from_student_id': 1, 'to_student_id': 1, 'to_account_type': 'savings', 'amount': '12.50',
    })
    assert cmd.destination.account_type == 'savings'
    assert cmd.amount == Decimal('12.50')


def test_transfer_rejects_unknown_entity_type():
    with pytest.raises(ValidationError):
        TransferCmd.from_payload({'from_entity_type': 'mint', 'to_student_id': 2, 'amount': 10})


def test_multi_transfer_equal_amount_applies_to_everyone():
    cmd = MultiTransferCmd.from_payload({
        'from_student_id': 1,
        'transfer_type': 'equal',
        'amount': 100,
        'recipients': [{'student_id': 2}, {'student_id': 3}],
    })
    assert [recipient.amount for recipient in cmd.recipients] == [Decimal('100'), Decimal('100')]
    assert cmd.total_amount == Decimal('200')


@pytest.mark.parametrize("recipients", [
    [],
    [{'student_id': 2, 'amount': 10}, {'student_id': 2, 'amount': 5}],
    [{'student_id': 1, 'amount': 10}],
])
def test_multi_transfer_rejects_bad_recipients(recipients):
    with pytest.raises(ValidationError):
        MultiTransferCmd.from_payload({'from_student_id': 1, 'recipients': recipients})


def test_tax_rate_bounds():
    with pytest.raises(ValidationError):
        TaxCollectionCmd.from_payload({'tax_type': 'percentage', 'tax_rate': 101})
    cmd = TaxCollectionCmd.from_payload({'tax_type': 'percentage', 'tax_rate': 3})
    assert cmd.tax_for(Decimal('1050')) == Decimal('32')


def test_allowance_defaults_to_weekly_allowance():
    assert AllowanceCmd.from_payload({}).use_weekly_allowance is True
    cmd = AllowanceCmd.from_payload({'use_weekly_allowance': False, 'amount': 300})
    assert cmd.amount == Decimal('300')


def test_seat_layout_sorts_and_counts_columns():
    cmd = SeatLayoutCmd.from_payload({'columns': [{'column': 2, 'seats': 3}, {'column': 1, 'seats': 4}]})
    assert cmd.columns == ((1, 4), (2, 3))
    assert cmd.total_seats == 7


def test_seat_layout_rejects_duplicate_columns():
    with pytest.raises(ValidationError):
        SeatLayoutCmd.from_payload({'columns': [{'column': 1, 'seats': 3}, {'column': 1, 'seats': 4}]})


def test_loan_commands_accept_alternate_field_names():
    assert OriginateLoanCmd.from_payload({'amount': 1000, 'weeks': 4}).weeks == 4
    assert RepayLoanCmd.from_payload({'payment_amount': 50}).amount == Decimal('50')
    with pytest.raises(ValidationError):
        OriginateLoanCmd.from_payload({'amount': 1000, 'duration_weeks': 0})


def test_submit_quiz_requires_answer_list():
    with pytest.raises(ValidationError):
        SubmitQuizCmd.from_payload({'answers': 'A'})
    cmd = SubmitQuizCmd.from_payload({'answers': [{'question_index': 0, 'answer': None}]})
    assert cmd.answers[0].answer == ''


def test_publish_quiz_parses_date_and_questions():
    cmd = PublishQuizCmd.from_payload({
        'quiz_date': '2026-03-02',
        'questions': [{'question': ' Q ', 'correct_answer': ' A ', 'options': ['A', 'B']}],
    })
    assert cmd.quiz_date == date(2026, 3, 2)
    assert cmd.questions[0]['question'] == 'Q'
    assert cmd.questions[0]['correct_answer'] == 'A'

    with pytest.raises(ValidationError):
        PublishQuizCmd.from_payload({'quiz_date': '03/02/2026', 'questions': [{'question': 'Q', 'correct_answer': 'A'}]})


def test_credit_adjustment_steps():
    assert CreditAdjustmentCmd.from_payload({'adjustment': 15}).adjustment == 15
    with pytest.raises(ValidationError):
        CreditAdjustmentCmd.from_payload({'adjustment': 25})


def test_non_object_payload_rejected():
    with pytest.raises(ValidationError):
        TransferCmd.from_payload(['not', 'an', 'object'])


def test_update_student_needs_a_field():
    with pytest.raises(ValidationError):
        UpdateStudentCmd.from_payload({})

    cmd = UpdateStudentCmd.from_payload({'weekly_allowance': 0})
    assert cmd.name is None
    assert cmd.weekly_allowance == Decimal('0')

    with pytest.raises(ValidationError) as exc_info:
        UpdateStudentCmd.from_payload({'name': '  '})
    assert exc_info.value.details['field'] == 'name'


def test_trade_ignores_client_price_and_defaults_to_investment():
    cmd = TradeAssetCmd.from_payload({'asset_id': 3, 'quantity': '0.1234567', 'price': 1})
    assert cmd.quantity == Decimal('0.123457')
    assert cmd.account_type == 'investment'
    assert not hasattr(cmd, 'price')

    with pytest.raises(ValidationError):
        TradeAssetCmd.from_payload({'asset_id': 3, 'quantity': 0})


def test_upsert_asset_normalizes_symbol():
    cmd = UpsertAssetCmd.from_payload({'symbol': ' acme ', 'current_price': 10})
    assert cmd.symbol == 'ACME'
    assert cmd.min_quantity == Decimal('1')

    with pytest.raises(ValidationError):
        UpsertAssetCmd.from_payload({'symbol': 'ACME', 'current_price': 10, 'asset_type': 'bond'})
