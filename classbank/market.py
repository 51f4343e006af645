"""
Seat market: tenant-wide seat pricing and seat ownership transfers.

The seat price is a pure function of the tenant's aggregate student wealth
and student count. ``Seat.current_price`` on unowned seats is only a cached
projection of that function, refreshed with one conditional UPDATE after
every purchase, every sale, and on request.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR

from flask import current_app
from sqlalchemy import func

from classbank.errors import Conflict, InsufficientFunds, NotFound, SeatUnavailable
from classbank.extensions import db
from classbank.ledger import BalanceRef, balance_of, move_funds, unit_of_work
from classbank.models import Account, MarketSettings, Seat, SeatTransaction, Student
from classbank.roster import get_student
from classbank.utils.constants import (
    DEFAULT_SEAT_LAYOUT,
    DEFAULT_SEAT_PRICE,
    MIN_SEAT_PRICE,
    SEAT_PRICE_ASSET_RATIO,
)
from classbank.utils.helpers import get_setting, money


# -------------------- PRICING --------------------

def compute_seat_price(total_assets, student_count, ratio=SEAT_PRICE_ASSET_RATIO,
                       default=DEFAULT_SEAT_PRICE, minimum=MIN_SEAT_PRICE):
    """
    floor(total_assets * ratio / student_count), never below ``minimum``.

    With no students or no assets the price is ``default``.
    """
    total_assets = Decimal(total_assets or 0)
    if not student_count or student_count <= 0 or total_assets <= 0:
        return max(int(default), int(minimum))
    price = (total_assets * Decimal(str(ratio)) / Decimal(student_count)).to_integral_value(rounding=ROUND_FLOOR)
    return max(int(price), int(minimum))


def total_student_assets(teacher_id):
    """Checking + savings + investment over every student of the tenant."""
    total = (
        db.session.query(func.coalesce(func.sum(Account.balance), 0))
        .join(Student, Account.student_id == Student.id)
        .filter(Student.teacher_id == teacher_id)
        .scalar()
    )
    return Decimal(total or 0)


def get_market_settings(teacher_id, create=False):
    settings = MarketSettings.query.filter_by(teacher_id=teacher_id).first()
    if settings is None and create:
        settings = MarketSettings(teacher_id=teacher_id)
        db.session.add(settings)
    return settings


def _effective_student_count(teacher_id, manual_student_count=None):
    if manual_student_count:
        return manual_student_count
    settings = get_market_settings(teacher_id)
    if settings is not None and settings.manual_student_count:
        return settings.manual_student_count
    return Student.query.filter_by(teacher_id=teacher_id).count()


def current_seat_price(teacher_id, manual_student_count=None):
    """Price derived from live balances; use this wherever staleness matters."""
    return compute_seat_price(
        total_student_assets(teacher_id),
        _effective_student_count(teacher_id, manual_student_count),
        ratio=get_setting('SEAT_PRICE_ASSET_RATIO', SEAT_PRICE_ASSET_RATIO),
        default=get_setting('DEFAULT_SEAT_PRICE', DEFAULT_SEAT_PRICE),
        minimum=get_setting('MIN_SEAT_PRICE', MIN_SEAT_PRICE),
    )


def apply_seat_price(teacher_id, price):
    """Write ``price`` to every unowned seat of the tenant. Returns rows touched."""
    return (
        Seat.query
        .filter(Seat.teacher_id == teacher_id, Seat.owner_id.is_(None))
        .update({Seat.current_price: price}, synchronize_session=False)
    )


@dataclass
class PriceResult:
    price: int
    student_count: int
    total_assets: Decimal
    updated_seats: int

    def to_dict(self):
        return {
            'price': self.price,
            'student_count': self.student_count,
            'total_assets': money(self.total_assets),
            'updated_seats': self.updated_seats,
        }


def recompute_seat_price(teacher_id, manual_student_count=None, persist=False):
    with unit_of_work():
        if persist:
            settings = get_market_settings(teacher_id, create=True)
            settings.manual_student_count = manual_student_count or None
            db.session.flush()
        student_count = _effective_student_count(teacher_id, manual_student_count)
        total_assets = total_student_assets(teacher_id)
        price = current_seat_price(teacher_id, manual_student_count)
        updated = apply_seat_price(teacher_id, price)
    current_app.logger.info(
        f"Seat price for teacher {teacher_id} set to {price} "
        f"({student_count} students, assets {total_assets}, {updated} seats)"
    )
    return PriceResult(price, student_count, total_assets, updated)


def _reprice_after_trade(teacher_id):
    price = current_seat_price(teacher_id)
    apply_seat_price(teacher_id, price)
    return price


# -------------------- BUY / SELL --------------------

@dataclass
class SeatTradeResult:
    seat_number: int
    price: int
    owner_id: object
    balance: Decimal
    market_price: int

    def to_dict(self):
        return {
            'seat_number': self.seat_number,
            'price': self.price,
            'new_owner_id': self.owner_id,
            'balance': money(self.balance),
            'market_price': self.market_price,
        }


def _get_seat(teacher_id, seat_number):
    seat = Seat.query.filter_by(teacher_id=teacher_id, seat_number=seat_number).first()
    if seat is None:
        raise NotFound('seat', f"Seat {seat_number} not found.")
    return seat


def buy_seat(teacher_id, student_id, cmd):
    """
    Buy an unowned seat at its listed price.

    The claim is a conditional UPDATE on ``owner_id IS NULL`` so only one of
    two concurrent buyers can win; the other gets SeatUnavailable.
    """
    with unit_of_work():
        student = get_student(teacher_id, student_id)
        seat = _get_seat(teacher_id, cmd.seat_number)
        if seat.owner_id is not None or not seat.is_available:
            raise SeatUnavailable(cmd.seat_number)

        price = int(seat.current_price)
        buyer = BalanceRef.student(student.id, 'checking')
        available = balance_of(teacher_id, buyer)
        if available < price:
            raise InsufficientFunds(required=price, available=available, holder=buyer.label)

        claimed = (
            Seat.query
            .filter(Seat.id == seat.id, Seat.owner_id.is_(None), Seat.is_available.is_(True))
            .update(
                {
                    Seat.owner_id: student.id,
                    Seat.purchase_price: price,
                    Seat.purchase_date: datetime.now(timezone.utc),
                    Seat.is_available: False,
                },
                synchronize_session=False,
            )
        )
        if claimed != 1:
            raise SeatUnavailable(cmd.seat_number)

        move_funds(
            teacher_id, buyer, None, Decimal(price), 'real_estate_purchase',
            f"Seat {cmd.seat_number} purchase",
        )
        db.session.add(SeatTransaction(
            teacher_id=teacher_id,
            seat_id=seat.id,
            seat_number=seat.seat_number,
            buyer_id=student.id,
            price=price,
            transaction_type='buy',
        ))
        market_price = _reprice_after_trade(teacher_id)
        result = SeatTradeResult(
            seat_number=cmd.seat_number,
            price=price,
            owner_id=student.id,
            balance=balance_of(teacher_id, buyer),
            market_price=market_price,
        )
    current_app.logger.info(
        f"Student {student_id} bought seat {cmd.seat_number} for {price} (teacher {teacher_id})"
    )
    return result


def sell_seat(teacher_id, student_id, cmd):
    """Sell an owned seat back to the market at the freshly computed price."""
    with unit_of_work():
        student = get_student(teacher_id, student_id)
        seat = _get_seat(teacher_id, cmd.seat_number)
        if seat.owner_id != student.id:
            raise Conflict(f"You do not own seat {cmd.seat_number}.", seat_number=cmd.seat_number)

        price = current_seat_price(teacher_id)
        released = (
            Seat.query
            .filter(Seat.id == seat.id, Seat.owner_id == student.id)
            .update(
                {
                    Seat.owner_id: None,
                    Seat.purchase_price: None,
                    Seat.purchase_date: None,
                    Seat.is_available: True,
                    Seat.current_price: price,
                },
                synchronize_session=False,
            )
        )
        if released != 1:
            raise Conflict(f"You do not own seat {cmd.seat_number}.", seat_number=cmd.seat_number)

        seller = BalanceRef.student(student.id, 'checking')
        move_funds(
            teacher_id, None, seller, Decimal(price), 'real_estate_sale',
            f"Seat {cmd.seat_number} sale",
        )
        db.session.add(SeatTransaction(
            teacher_id=teacher_id,
            seat_id=seat.id,
            seat_number=seat.seat_number,
            seller_id=student.id,
            price=price,
            transaction_type='sell',
        ))
        market_price = _reprice_after_trade(teacher_id)
        result = SeatTradeResult(
            seat_number=cmd.seat_number,
            price=price,
            owner_id=None,
            balance=balance_of(teacher_id, seller),
            market_price=market_price,
        )
    current_app.logger.info(
        f"Student {student_id} sold seat {cmd.seat_number} for {price} (teacher {teacher_id})"
    )
    return result


# -------------------- LAYOUT --------------------

def list_seats(teacher_id):
    return Seat.query.filter_by(teacher_id=teacher_id).order_by(Seat.seat_number).all()


def market_summary(teacher_id):
    seats = list_seats(teacher_id)
    settings = get_market_settings(teacher_id)
    return {
        'price': current_seat_price(teacher_id),
        'total_seats': len(seats),
        'owned_seats': sum(1 for seat in seats if seat.owner_id is not None),
        'student_count': Student.query.filter_by(teacher_id=teacher_id).count(),
        'manual_student_count': settings.manual_student_count if settings else None,
        'total_assets': money(total_student_assets(teacher_id)),
        'layout': (settings.layout_config if settings and settings.layout_config else DEFAULT_SEAT_LAYOUT),
    }


def apply_seat_layout(teacher_id, cmd):
    """
    Lay seats out column by column, numbering from 1.

    Owned seats keep their number and owner. Unowned seats past the new total
    are removed and missing numbers are created at the current market price.
    """
    with unit_of_work():
        seats = Seat.query.filter_by(teacher_id=teacher_id).with_for_update().all()
        by_number = {seat.seat_number: seat for seat in seats}
        total = cmd.total_seats

        stranded = sorted(
            seat.seat_number for seat in seats if seat.seat_number > total and seat.owner_id is not None
        )
        if stranded:
            raise Conflict(
                f"Owned seats {stranded} would be removed by this layout.", seat_numbers=stranded
            )

        price = current_seat_price(teacher_id)
        created = 0
        number = 0
        for column, count in cmd.columns:
            for position in range(1, count + 1):
                number += 1
                seat = by_number.get(number)
                if seat is None:
                    seat = Seat(
                        teacher_id=teacher_id,
                        seat_number=number,
                        current_price=price,
                        is_available=True,
                    )
                    db.session.add(seat)
                    created += 1
                seat.row_position = column
                seat.column_position = position

        removed = 0
        for seat in seats:
            if seat.seat_number > total:
                db.session.delete(seat)
                removed += 1

        settings = get_market_settings(teacher_id, create=True)
        settings.layout_config = cmd.as_config()

    current_app.logger.info(
        f"Seat layout for teacher {teacher_id}: {total} seats ({created} created, {removed} removed)"
    )
    return {'total_seats': total, 'created': created, 'removed': removed, 'price': price}
