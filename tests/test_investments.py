"""
Tests for investment trading at listed asset prices.
"""

from decimal import Decimal

import pytest

from classbank import investments, ledger, roster
from classbank.commands import AccountTransferCmd, TradeAssetCmd, UpsertAssetCmd
from classbank.errors import Conflict, InsufficientFunds, NotFound, ValidationError
from classbank.extensions import db
from classbank.ledger import get_entity
from classbank.models import AssetTransaction, PortfolioHolding, Transaction


@pytest.fixture
def asset(teacher):
    listed, _ = investments.upsert_asset(teacher.id, UpsertAssetCmd('ACME', Decimal('1000'), 'Acme Corp'))
    return listed


@pytest.fixture
def investor(teacher, make_student):
    student = make_student("Alice", 20000)
    ledger.account_transfer(teacher.id, student.id, AccountTransferCmd('checking', 'investment', Decimal('10000')))
    return student


def _investment(student):
    db.session.expire_all()
    return student.get_account('investment').balance


def _trade(asset, quantity):
    return TradeAssetCmd(asset.id, Decimal(str(quantity)))


def test_trade_fees_round_to_cents():
    assert investments.trade_fees(Decimal('2000')) == (Decimal('2.00'), Decimal('0'))
    assert investments.trade_fees(Decimal('1234.56'), selling=True) == (Decimal('1.23'), Decimal('2.47'))


def test_buy_pays_fee_to_securities(teacher, asset, investor):
    result = investments.buy_asset(teacher.id, investor.id, _trade(asset, 3))

    assert result.total_amount == Decimal('3000')
    assert result.brokerage_fee == Decimal('3')
    assert _investment(investor) == Decimal('6997')
    assert get_entity(teacher.id, 'securities').get_account('checking').balance == Decimal('3')

    holding = PortfolioHolding.query.filter_by(student_id=investor.id).one()
    assert holding.quantity == Decimal('3')
    assert holding.average_price == Decimal('1000')
    types = [entry.transaction_type for entry in Transaction.query.filter_by(from_student_id=investor.id)]
    assert 'investment_purchase' in types
    assert 'investment_fee' in types


def test_buy_averages_price_across_purchases(teacher, asset, investor):
    investments.buy_asset(teacher.id, investor.id, _trade(asset, 2))
    investments.upsert_asset(teacher.id, UpsertAssetCmd('ACME', Decimal('1600'), 'Acme Corp'))
    investments.buy_asset(teacher.id, investor.id, _trade(asset, 2))

    holding = PortfolioHolding.query.filter_by(student_id=investor.id).one()
    assert holding.quantity == Decimal('4')
    assert holding.total_invested == Decimal('5200')
    assert holding.average_price == Decimal('1300')


def test_buy_checks_cost_plus_fee(teacher, asset, investor):
    with pytest.raises(InsufficientFunds) as exc_info:
        investments.buy_asset(teacher.id, investor.id, _trade(asset, 10))

    assert exc_info.value.required == Decimal('10010')
    assert _investment(investor) == Decimal('10000')
    assert PortfolioHolding.query.count() == 0
    assert AssetTransaction.query.count() == 0


def test_buy_below_minimum_quantity_is_rejected(teacher, asset, investor):
    with pytest.raises(ValidationError):
        investments.buy_asset(teacher.id, investor.id, _trade(asset, '0.5'))


def test_fractional_asset_trades_below_one_unit(teacher, investor):
    coin, _ = investments.upsert_asset(
        teacher.id, UpsertAssetCmd('COIN', Decimal('5000'), 'Coin', 'crypto', Decimal('0.001'))
    )

    result = investments.buy_asset(teacher.id, investor.id, _trade(coin, '0.25'))

    assert result.total_amount == Decimal('1250')
    assert result.brokerage_fee == Decimal('1.25')


def test_inactive_asset_cannot_be_bought(teacher, investor):
    closed, _ = investments.upsert_asset(
        teacher.id, UpsertAssetCmd('GONE', Decimal('10'), 'Delisted', is_active=False)
    )

    with pytest.raises(Conflict):
        investments.buy_asset(teacher.id, investor.id, _trade(closed, 1))
    assert [listed.symbol for listed in investments.list_assets(teacher.id)] == []


def test_another_teachers_asset_is_not_found(teacher, other_teacher, investor):
    foreign, _ = investments.upsert_asset(other_teacher.id, UpsertAssetCmd('ACME', Decimal('10'), 'Acme'))

    with pytest.raises(NotFound):
        investments.buy_asset(teacher.id, investor.id, _trade(foreign, 1))


def test_sell_pays_fee_and_tax_and_reports_profit(teacher, asset, investor):
    investments.buy_asset(teacher.id, investor.id, _trade(asset, 4))
    investments.upsert_asset(teacher.id, UpsertAssetCmd('ACME', Decimal('1500'), 'Acme Corp'))
    government_before = get_entity(teacher.id, 'government').get_account('checking').balance

    result = investments.sell_asset(teacher.id, investor.id, _trade(asset, 2))

    assert result.total_amount == Decimal('3000')
    assert result.brokerage_fee == Decimal('3')
    assert result.tax == Decimal('6')
    assert result.profit == Decimal('1000')
    # 10000 - 4004 on the buy, then + 3000 - 9 on the sale
    assert _investment(investor) == Decimal('8987')
    assert get_entity(teacher.id, 'securities').get_account('checking').balance == Decimal('7')
    assert get_entity(teacher.id, 'government').get_account('checking').balance == government_before + 6

    holding = PortfolioHolding.query.filter_by(student_id=investor.id).one()
    assert holding.quantity == Decimal('2')
    assert holding.total_invested == Decimal('2000')


def test_selling_everything_removes_holding(teacher, asset, investor):
    investments.buy_asset(teacher.id, investor.id, _trade(asset, 2))

    result = investments.sell_asset(teacher.id, investor.id, _trade(asset, 2))

    assert result.remaining_quantity == 0
    assert PortfolioHolding.query.filter_by(student_id=investor.id).count() == 0
    assert AssetTransaction.query.filter_by(student_id=investor.id).count() == 2


def test_sell_more_than_held_is_conflict(teacher, asset, investor):
    investments.buy_asset(teacher.id, investor.id, _trade(asset, 1))

    with pytest.raises(Conflict):
        investments.sell_asset(teacher.id, investor.id, _trade(asset, 2))


def test_sell_without_holding_is_conflict(teacher, asset, investor):
    with pytest.raises(Conflict):
        investments.sell_asset(teacher.id, investor.id, _trade(asset, 1))


def test_partial_sell_may_not_leave_dust(teacher, investor):
    fund, _ = investments.upsert_asset(
        teacher.id, UpsertAssetCmd('FUND', Decimal('100'), 'Fund', 'etf', Decimal('2'))
    )
    investments.buy_asset(teacher.id, investor.id, _trade(fund, 3))

    with pytest.raises(ValidationError):
        investments.sell_asset(teacher.id, investor.id, _trade(fund, 2))

    investments.sell_asset(teacher.id, investor.id, _trade(fund, 3))


def test_portfolio_values_holdings_at_current_price(teacher, asset, investor):
    investments.buy_asset(teacher.id, investor.id, _trade(asset, 2))
    investments.upsert_asset(teacher.id, UpsertAssetCmd('ACME', Decimal('1250'), 'Acme Corp'))

    report = investments.portfolio(teacher.id, investor.id)

    assert report['holdings'][0]['current_value'] == 2500
    assert report['holdings'][0]['profit'] == 500
    assert report['summary']['profit_percent'] == 25.0


def test_deleting_student_removes_holdings(teacher, asset, investor):
    investments.buy_asset(teacher.id, investor.id, _trade(asset, 2))

    roster.delete_student(teacher.id, investor.id)

    assert PortfolioHolding.query.count() == 0
    assert AssetTransaction.query.filter_by(asset_id=asset.id).one().student_id is None
