"""
Investment trading against teacher-maintained asset prices.

Trades always execute at ``MarketAsset.current_price`` as stored; a price in
the request body is never trusted. Every money leg goes through
``move_funds``: the trade amount leaves or enters the economy through the
system side, the brokerage fee goes to the securities entity and the sell
tax goes to the government.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app

from classbank.errors import Conflict, InsufficientFunds, NotFound, ValidationError
from classbank.extensions import db
from classbank.ledger import BalanceRef, balance_of, get_entity, move_funds, unit_of_work
from classbank.models import AssetTransaction, MarketAsset, PortfolioHolding
from classbank.roster import get_student
from classbank.utils.constants import INVESTMENT_BROKERAGE_FEE_RATE, INVESTMENT_SELL_TAX_RATE
from classbank.utils.helpers import get_setting, money

CENTS = Decimal('0.01')


def _cents(value):
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def trade_fees(total_amount, selling=False):
    """(brokerage fee, sell tax) on ``total_amount``, rounded to cents."""
    brokerage = _cents(total_amount * get_setting('INVESTMENT_BROKERAGE_FEE_RATE', INVESTMENT_BROKERAGE_FEE_RATE))
    tax = _cents(total_amount * get_setting('INVESTMENT_SELL_TAX_RATE', INVESTMENT_SELL_TAX_RATE)) if selling else Decimal('0')
    return brokerage, tax


# -------------------- ASSETS --------------------

def list_assets(teacher_id, include_inactive=False):
    query = MarketAsset.query.filter_by(teacher_id=teacher_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(MarketAsset.symbol).all()


def get_asset(teacher_id, asset_id):
    asset = MarketAsset.query.filter_by(id=asset_id, teacher_id=teacher_id).first()
    if asset is None:
        raise NotFound('asset')
    return asset


def upsert_asset(teacher_id, cmd):
    """Create an asset or update the price and listing of an existing symbol."""
    with unit_of_work():
        asset = MarketAsset.query.filter_by(teacher_id=teacher_id, symbol=cmd.symbol).first()
        created = asset is None
        if created:
            asset = MarketAsset(teacher_id=teacher_id, symbol=cmd.symbol)
            db.session.add(asset)
        asset.name = cmd.name or asset.name or cmd.symbol
        asset.asset_type = cmd.asset_type
        asset.current_price = cmd.current_price
        asset.min_quantity = cmd.min_quantity
        asset.is_active = cmd.is_active
        db.session.flush()
    current_app.logger.info(
        f"{'Listed' if created else 'Updated'} asset {cmd.symbol} at {cmd.current_price} (teacher {teacher_id})"
    )
    return asset, created


# -------------------- TRADES --------------------

@dataclass
class TradeResult:
    side: str
    symbol: str
    quantity: Decimal
    price: Decimal
    total_amount: Decimal
    brokerage_fee: Decimal
    tax: Decimal
    balance: Decimal
    remaining_quantity: Decimal
    profit: Decimal = None

    @property
    def net_amount(self):
        if self.side == 'buy':
            return self.total_amount + self.brokerage_fee
        return self.total_amount - self.brokerage_fee - self.tax

    def to_dict(self):
        data = {
            'side': self.side,
            'symbol': self.symbol,
            'quantity': float(self.quantity),
            'price': money(self.price),
            'total_amount': money(self.total_amount),
            'fees': {
                'brokerage': money(self.brokerage_fee),
                'tax': money(self.tax),
                'total': money(self.brokerage_fee + self.tax),
            },
            'net_amount': money(self.net_amount),
            'balance': money(self.balance),
            'remaining_quantity': float(self.remaining_quantity),
        }
        if self.profit is not None:
            data['profit'] = money(self.profit)
        return data


def _lock_holding(student_id, asset_id):
    return (
        PortfolioHolding.query
        .filter_by(student_id=student_id, asset_id=asset_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def buy_asset(teacher_id, student_id, cmd):
    """Buy ``cmd.quantity`` of an asset; the cost plus brokerage fee is debited."""
    with unit_of_work():
        student = get_student(teacher_id, student_id)
        asset = get_asset(teacher_id, cmd.asset_id)
        if not asset.is_active:
            raise Conflict(f"{asset.symbol} is not open for trading.", asset_id=asset.id)
        if cmd.quantity < asset.min_quantity:
            raise ValidationError(
                f"The minimum order quantity for {asset.symbol} is {asset.min_quantity}.", field='quantity'
            )

        price = Decimal(asset.current_price)
        total = _cents(cmd.quantity * price)
        brokerage, _ = trade_fees(total)
        buyer = BalanceRef.student(student.id, cmd.account_type)
        available = balance_of(teacher_id, buyer)
        if available < total + brokerage:
            raise InsufficientFunds(required=total + brokerage, available=available, holder=buyer.label)

        securities = get_entity(teacher_id, 'securities')
        move_funds(
            teacher_id, buyer, None, total, 'investment_purchase',
            f"{asset.symbol} purchase of {cmd.quantity}",
        )
        if brokerage > 0:
            move_funds(
                teacher_id, buyer, BalanceRef.entity(securities.id), brokerage, 'investment_fee',
                f"{asset.symbol} purchase fee",
            )

        holding = _lock_holding(student.id, asset.id)
        if holding is None:
            holding = PortfolioHolding(
                student_id=student.id,
                asset_id=asset.id,
                quantity=Decimal('0'),
                total_invested=Decimal('0'),
            )
            db.session.add(holding)
        holding.quantity = Decimal(holding.quantity) + cmd.quantity
        holding.total_invested = Decimal(holding.total_invested) + total
        holding.average_price = _cents(holding.total_invested / holding.quantity)

        db.session.add(AssetTransaction(
            teacher_id=teacher_id,
            student_id=student.id,
            asset_id=asset.id,
            transaction_type='buy',
            quantity=cmd.quantity,
            price=price,
            total_amount=total,
            fee=brokerage,
            account_type=cmd.account_type,
        ))
        db.session.flush()
        result = TradeResult(
            side='buy',
            symbol=asset.symbol,
            quantity=cmd.quantity,
            price=price,
            total_amount=total,
            brokerage_fee=brokerage,
            tax=Decimal('0'),
            balance=balance_of(teacher_id, buyer),
            remaining_quantity=Decimal(holding.quantity),
        )
    current_app.logger.info(
        f"Student {student_id} bought {cmd.quantity} {asset.symbol} for {total} (teacher {teacher_id})"
    )
    return result


def sell_asset(teacher_id, student_id, cmd):
    """
    Sell part or all of a holding.

    The gross proceeds are credited, then the brokerage fee and the sell tax
    are paid out of them. A partial sale may not leave less than the asset's
    minimum quantity behind.
    """
    with unit_of_work():
        student = get_student(teacher_id, student_id)
        asset = get_asset(teacher_id, cmd.asset_id)
        holding = _lock_holding(student.id, asset.id)
        if holding is None:
            raise Conflict(f"You do not hold {asset.symbol}.", asset_id=asset.id)
        held = Decimal(holding.quantity)
        if cmd.quantity > held:
            raise Conflict(
                f"You hold only {held} {asset.symbol}.", asset_id=asset.id, held_quantity=float(held)
            )
        remaining = held - cmd.quantity
        if 0 < remaining < asset.min_quantity:
            raise ValidationError(
                f"Selling would leave less than the minimum of {asset.min_quantity} {asset.symbol}; "
                f"sell all of it or a smaller amount.",
                field='quantity',
            )

        price = Decimal(asset.current_price)
        total = _cents(cmd.quantity * price)
        brokerage, tax = trade_fees(total, selling=True)
        cost_basis = _cents(Decimal(holding.average_price) * cmd.quantity) if remaining else Decimal(holding.total_invested)

        seller = BalanceRef.student(student.id, cmd.account_type)
        move_funds(
            teacher_id, None, seller, total, 'investment_sale',
            f"{asset.symbol} sale of {cmd.quantity}",
        )
        if brokerage > 0:
            securities = get_entity(teacher_id, 'securities')
            move_funds(
                teacher_id, seller, BalanceRef.entity(securities.id), brokerage, 'investment_fee',
                f"{asset.symbol} sale fee",
            )
        if tax > 0:
            government = get_entity(teacher_id, 'government')
            move_funds(
                teacher_id, seller, BalanceRef.entity(government.id), tax, 'tax_payment',
                f"{asset.symbol} trading tax",
            )

        if remaining:
            holding.quantity = remaining
            holding.total_invested = max(Decimal(holding.total_invested) - cost_basis, Decimal('0'))
        else:
            db.session.delete(holding)

        db.session.add(AssetTransaction(
            teacher_id=teacher_id,
            student_id=student.id,
            asset_id=asset.id,
            transaction_type='sell',
            quantity=cmd.quantity,
            price=price,
            total_amount=total,
            fee=brokerage + tax,
            account_type=cmd.account_type,
        ))
        db.session.flush()
        result = TradeResult(
            side='sell',
            symbol=asset.symbol,
            quantity=cmd.quantity,
            price=price,
            total_amount=total,
            brokerage_fee=brokerage,
            tax=tax,
            balance=balance_of(teacher_id, seller),
            remaining_quantity=remaining,
            profit=total - cost_basis,
        )
    current_app.logger.info(
        f"Student {student_id} sold {cmd.quantity} {asset.symbol} for {total} (teacher {teacher_id})"
    )
    return result


# -------------------- PORTFOLIO --------------------

def portfolio(teacher_id, student_id):
    """Holdings valued at current prices, with profit against the cost basis."""
    student = get_student(teacher_id, student_id)
    holdings = []
    total_invested = Decimal('0')
    total_value = Decimal('0')
    for holding in student.holdings.order_by(PortfolioHolding.id):
        asset = holding.asset
        invested = Decimal(holding.total_invested)
        value = _cents(Decimal(holding.quantity) * Decimal(asset.current_price))
        profit = value - invested
        holdings.append({
            'asset_id': asset.id,
            'symbol': asset.symbol,
            'name': asset.name,
            'quantity': float(holding.quantity),
            'average_price': money(holding.average_price),
            'current_price': money(asset.current_price),
            'total_invested': money(invested),
            'current_value': money(value),
            'profit': money(profit),
            'profit_percent': float(profit / invested * 100) if invested else 0.0,
        })
        total_invested += invested
        total_value += value
    total_profit = total_value - total_invested
    return {
        'holdings': holdings,
        'summary': {
            'total_invested': money(total_invested),
            'total_value': money(total_value),
            'total_profit': money(total_profit),
            'profit_percent': float(total_profit / total_invested * 100) if total_invested else 0.0,
        },
    }
