"""
Database models for classbank.

All SQLAlchemy models are defined here with proper relationships and properties.
Times are stored as UTC in the database. Money is stored as Numeric(14, 2);
seat prices are whole units.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import event

from classbank.extensions import db
from classbank.utils.constants import ACCOUNT_TYPES, DEFAULT_CREDIT_SCORE, TRANSACTION_TYPES
from classbank.utils.encryption import PIIEncryptedType


def _utc_now():
    """Helper function for timezone-aware datetime defaults in SQLAlchemy models."""
    return datetime.now(timezone.utc)


_ACCOUNT_TYPE_CHECK = "account_type IN ('checking', 'savings', 'investment')"
_TRANSACTION_TYPE_CHECK = "transaction_type IN (" + ", ".join(f"'{t}'" for t in TRANSACTION_TYPES) + ")"

MONEY = db.Numeric(14, 2)
QUANTITY = db.Numeric(18, 6)


# -------------------- TENANTS AND STUDENTS --------------------

class Admin(db.Model):
    """A teacher. Every other row belongs to exactly one teacher (the tenant)."""
    __tablename__ = 'admins'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    display_name = db.Column(db.String(100), nullable=True)
    # IANA timezone name used to decide "today" for daily quizzes
    timezone = db.Column(db.String(50), nullable=True)
    created_at = db.Column(db.DateTime, default=_utc_now)

    def __repr__(self):
        return f'<Admin {self.username}>'


class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False)
    name = db.Column(PIIEncryptedType(key_env_var='ENCRYPTION_KEY'), nullable=False)
    credit_score = db.Column(db.Integer, nullable=False, default=DEFAULT_CREDIT_SCORE)
    weekly_allowance = db.Column(MONEY, nullable=False, default=Decimal('0'))
    created_at = db.Column(db.DateTime, default=_utc_now)

    teacher = db.relationship('Admin', backref=db.backref('students', lazy='dynamic', passive_deletes=True))
    accounts = db.relationship(
        'Account',
        backref='student',
        cascade='all, delete-orphan',
        passive_deletes=True,
        order_by='Account.id',
    )
    loans = db.relationship(
        'Loan',
        backref='student',
        lazy='dynamic',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )
    quiz_attempts = db.relationship(
        'QuizAttempt',
        backref='student',
        lazy='dynamic',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    __table_args__ = (
        db.CheckConstraint('credit_score BETWEEN 350 AND 850', name='ck_students_credit_score_range'),
        db.Index('ix_students_teacher_id', 'teacher_id'),
    )

    def get_account(self, account_type):
        for account in self.accounts:
            if account.account_type == account_type:
                return account
        return None

    @property
    def total_balance(self):
        return sum((account.balance or Decimal('0') for account in self.accounts), Decimal('0'))

    def __repr__(self):
        return f'<Student {self.id} teacher={self.teacher_id}>'


class Account(db.Model):
    """One balance per (student, account type). Created with the student, never deleted alone."""
    __tablename__ = 'accounts'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    account_type = db.Column(db.String(20), nullable=False)
    balance = db.Column(MONEY, nullable=False, default=Decimal('0'))
    interest_rate = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal('0'))
    created_at = db.Column(db.DateTime, default=_utc_now)
    updated_at = db.Column(db.DateTime, default=_utc_now, onupdate=_utc_now)

    __table_args__ = (
        db.UniqueConstraint('student_id', 'account_type', name='uq_accounts_student_type'),
        db.CheckConstraint('balance >= 0', name='ck_accounts_balance_non_negative'),
        db.CheckConstraint(_ACCOUNT_TYPE_CHECK, name='ck_accounts_account_type'),
    )


# -------------------- ECONOMIC ENTITIES --------------------

class EconomicEntity(db.Model):
    """Government, bank or securities firm of one tenant."""
    __tablename__ = 'economic_entities'

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False)
    entity_type = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime, default=_utc_now)

    teacher = db.relationship('Admin', backref=db.backref('entities', lazy='dynamic', passive_deletes=True))
    accounts = db.relationship(
        'EntityAccount',
        backref='entity',
        cascade='all, delete-orphan',
        passive_deletes=True,
        order_by='EntityAccount.id',
    )

    __table_args__ = (
        db.UniqueConstraint('teacher_id', 'entity_type', name='uq_economic_entities_teacher_type'),
        db.CheckConstraint(
            "entity_type IN ('government', 'bank', 'securities')",
            name='ck_economic_entities_entity_type',
        ),
    )

    def get_account(self, account_type):
        for account in self.accounts:
            if account.account_type == account_type:
                return account
        return None

    @property
    def balance(self):
        """Total across the entity's typed accounts."""
        return sum((account.balance or Decimal('0') for account in self.accounts), Decimal('0'))


class EntityAccount(db.Model):
    __tablename__ = 'economic_entity_accounts'

    id = db.Column(db.Integer, primary_key=True)
    entity_id = db.Column(db.Integer, db.ForeignKey('economic_entities.id', ondelete='CASCADE'), nullable=False)
    account_type = db.Column(db.String(20), nullable=False)
    balance = db.Column(MONEY, nullable=False, default=Decimal('0'))
    updated_at = db.Column(db.DateTime, default=_utc_now, onupdate=_utc_now)

    __table_args__ = (
        db.UniqueConstraint('entity_id', 'account_type', name='uq_entity_accounts_entity_type'),
        db.CheckConstraint('balance >= 0', name='ck_entity_accounts_balance_non_negative'),
        db.CheckConstraint(_ACCOUNT_TYPE_CHECK, name='ck_entity_accounts_account_type'),
    )


# -------------------- LEDGER --------------------

class Transaction(db.Model):
    """
    Immutable ledger entry for one money movement.

    Each side is a student, an economic entity, or neither (the "system",
    e.g. minted allowance). Zero-amount rows record non-monetary events such
    as credit score adjustments.
    """
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False)

    from_student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='SET NULL'), nullable=True)
    from_entity_id = db.Column(db.Integer, db.ForeignKey('economic_entities.id', ondelete='SET NULL'), nullable=True)
    from_account_type = db.Column(db.String(20), nullable=True)

    to_student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='SET NULL'), nullable=True)
    to_entity_id = db.Column(db.Integer, db.ForeignKey('economic_entities.id', ondelete='SET NULL'), nullable=True)
    to_account_type = db.Column(db.String(20), nullable=True)

    amount = db.Column(MONEY, nullable=False)
    transaction_type = db.Column(db.String(30), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default='completed')
    created_at = db.Column(db.DateTime, default=_utc_now, nullable=False)

    __table_args__ = (
        db.CheckConstraint('amount >= 0', name='ck_transactions_amount_non_negative'),
        db.CheckConstraint(_TRANSACTION_TYPE_CHECK, name='ck_transactions_type'),
        db.Index('ix_transactions_teacher_created', 'teacher_id', 'created_at'),
        db.Index('ix_transactions_from_student', 'from_student_id'),
        db.Index('ix_transactions_to_student', 'to_student_id'),
        db.Index('ix_transactions_type', 'transaction_type'),
    )

    def to_dict(self):
        from classbank.utils.helpers import format_utc_iso, money
        return {
            'id': self.id,
            'from_student_id': self.from_student_id,
            'from_entity_id': self.from_entity_id,
            'from_account_type': self.from_account_type,
            'to_student_id': self.to_student_id,
            'to_entity_id': self.to_entity_id,
            'to_account_type': self.to_account_type,
            'amount': money(self.amount),
            'transaction_type': self.transaction_type,
            'description': self.description,
            'status': self.status,
            'created_at': format_utc_iso(self.created_at),
        }


@event.listens_for(Transaction, 'before_update')
def _reject_transaction_update(mapper, connection, target):
    raise ValueError(f"Ledger transaction {target.id} is write-once and cannot be modified.")


@event.listens_for(Transaction, 'before_delete')
def _reject_transaction_delete(mapper, connection, target):
    raise ValueError(f"Ledger transaction {target.id} is write-once and cannot be deleted.")


# -------------------- SEAT MARKET --------------------

class Seat(db.Model):
    __tablename__ = 'seats'

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False)
    seat_number = db.Column(db.Integer, nullable=False)
    row_position = db.Column(db.Integer, nullable=False, default=1)
    column_position = db.Column(db.Integer, nullable=False, default=1)
    current_price = db.Column(db.Integer, nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='SET NULL'), nullable=True)
    # Meaningful only while owned
    purchase_price = db.Column(db.Integer, nullable=True)
    purchase_date = db.Column(db.DateTime, nullable=True)
    is_available = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(db.DateTime, default=_utc_now, onupdate=_utc_now)

    owner = db.relationship('Student', backref=db.backref('seats', lazy='dynamic', passive_deletes=True))

    __table_args__ = (
        db.UniqueConstraint('teacher_id', 'seat_number', name='uq_seats_teacher_number'),
        db.Index('ix_seats_owner_id', 'owner_id'),
    )

    def to_dict(self):
        from classbank.utils.helpers import format_utc_iso
        return {
            'id': self.id,
            'seat_number': self.seat_number,
            'row_position': self.row_position,
            'column_position': self.column_position,
            'current_price': self.current_price,
            'owner_id': self.owner_id,
            'purchase_price': self.purchase_price,
            'purchase_date': format_utc_iso(self.purchase_date),
            'is_available': self.is_available,
        }


class SeatTransaction(db.Model):
    """Append-only record of a seat buy or sell, mirroring a ledger Transaction."""
    __tablename__ = 'seat_transactions'

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False)
    seat_id = db.Column(db.Integer, db.ForeignKey('seats.id', ondelete='CASCADE'), nullable=False)
    seat_number = db.Column(db.Integer, nullable=False)
    buyer_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='SET NULL'), nullable=True)
    seller_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='SET NULL'), nullable=True)
    price = db.Column(db.Integer, nullable=False)
    transaction_type = db.Column(db.String(10), nullable=False)
    created_at = db.Column(db.DateTime, default=_utc_now, nullable=False)

    __table_args__ = (
        db.CheckConstraint("transaction_type IN ('buy', 'sell')", name='ck_seat_transactions_type'),
    )


class MarketSettings(db.Model):
    """Per-tenant seat market configuration."""
    __tablename__ = 'market_settings'

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False, unique=True)
    manual_student_count = db.Column(db.Integer, nullable=True)
    # [{"column": 1, "seats": 6}, ...]
    layout_config = db.Column(db.JSON, nullable=True)
    updated_at = db.Column(db.DateTime, default=_utc_now, onupdate=_utc_now)


# -------------------- INVESTMENTS --------------------

class MarketAsset(db.Model):
    """A tradable asset listed for a tenant at a teacher-maintained price."""
    __tablename__ = 'market_assets'

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False)
    symbol = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    asset_type = db.Column(db.String(20), nullable=False, default='stock')
    current_price = db.Column(MONEY, nullable=False)
    min_quantity = db.Column(QUANTITY, nullable=False, default=Decimal('1'))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(db.DateTime, default=_utc_now, onupdate=_utc_now)

    __table_args__ = (
        db.UniqueConstraint('teacher_id', 'symbol', name='uq_market_assets_teacher_symbol'),
        db.CheckConstraint('current_price > 0', name='ck_market_assets_price_positive'),
        db.CheckConstraint(
            "asset_type IN ('stock', 'crypto', 'commodity', 'etf')", name='ck_market_assets_type'
        ),
    )

    def to_dict(self):
        from classbank.utils.helpers import format_utc_iso, money
        return {
            'id': self.id,
            'symbol': self.symbol,
            'name': self.name,
            'asset_type': self.asset_type,
            'current_price': money(self.current_price),
            'min_quantity': float(self.min_quantity),
            'is_active': self.is_active,
            'updated_at': format_utc_iso(self.updated_at),
        }


class PortfolioHolding(db.Model):
    """A student's position in one asset. Removed when fully sold."""
    __tablename__ = 'portfolio_holdings'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    asset_id = db.Column(db.Integer, db.ForeignKey('market_assets.id', ondelete='CASCADE'), nullable=False)
    quantity = db.Column(QUANTITY, nullable=False)
    average_price = db.Column(MONEY, nullable=False)
    total_invested = db.Column(MONEY, nullable=False)
    updated_at = db.Column(db.DateTime, default=_utc_now, onupdate=_utc_now)

    student = db.relationship(
        'Student',
        backref=db.backref('holdings', lazy='dynamic', cascade='all, delete-orphan', passive_deletes=True),
    )
    asset = db.relationship('MarketAsset')

    __table_args__ = (
        db.UniqueConstraint('student_id', 'asset_id', name='uq_portfolio_holdings_student_asset'),
        db.CheckConstraint('quantity > 0', name='ck_portfolio_holdings_quantity_positive'),
    )


class AssetTransaction(db.Model):
    """Append-only record of an asset trade; the money legs are in ``transactions``."""
    __tablename__ = 'asset_transactions'

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='SET NULL'), nullable=True)
    asset_id = db.Column(db.Integer, db.ForeignKey('market_assets.id', ondelete='CASCADE'), nullable=False)
    transaction_type = db.Column(db.String(10), nullable=False)
    quantity = db.Column(QUANTITY, nullable=False)
    price = db.Column(MONEY, nullable=False)
    total_amount = db.Column(MONEY, nullable=False)
    fee = db.Column(MONEY, nullable=False, default=Decimal('0'))
    account_type = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, default=_utc_now, nullable=False)

    __table_args__ = (
        db.CheckConstraint("transaction_type IN ('buy', 'sell')", name='ck_asset_transactions_type'),
        db.Index('ix_asset_transactions_student', 'student_id'),
    )


# -------------------- LOANS --------------------

class Loan(db.Model):
    __tablename__ = 'loans'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False)
    amount = db.Column(MONEY, nullable=False)
    interest_rate = db.Column(db.Numeric(5, 2), nullable=False)  # annual, percent
    duration_weeks = db.Column(db.Integer, nullable=False)
    weekly_payment = db.Column(MONEY, nullable=False)
    total_payment = db.Column(MONEY, nullable=False)
    remaining_balance = db.Column(MONEY, nullable=False)
    remaining_weeks = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='active')
    next_payment_due = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=_utc_now)
    completed_at = db.Column(db.DateTime, nullable=True)
    defaulted_at = db.Column(db.DateTime, nullable=True)

    payments = db.relationship(
        'LoanPayment',
        backref='loan',
        lazy='dynamic',
        cascade='all, delete-orphan',
        passive_deletes=True,
        order_by='LoanPayment.id',
    )

    __table_args__ = (
        db.CheckConstraint("status IN ('active', 'completed', 'defaulted')", name='ck_loans_status'),
        db.CheckConstraint('remaining_balance >= 0', name='ck_loans_remaining_non_negative'),
        db.Index('ix_loans_student_status', 'student_id', 'status'),
        db.Index('ix_loans_teacher_status', 'teacher_id', 'status'),
    )

    @property
    def progress_percent(self):
        if not self.amount:
            return 0
        paid = Decimal(self.amount) - Decimal(self.remaining_balance)
        return max(0, min(100, int(paid * 100 / Decimal(self.amount))))

    def to_dict(self):
        from classbank.utils.helpers import format_utc_iso, money
        return {
            'id': self.id,
            'student_id': self.student_id,
            'amount': money(self.amount),
            'interest_rate': float(self.interest_rate),
            'duration_weeks': self.duration_weeks,
            'weekly_payment': money(self.weekly_payment),
            'total_payment': money(self.total_payment),
            'remaining_balance': money(self.remaining_balance),
            'remaining_weeks': self.remaining_weeks,
            'status': self.status,
            'progress_percent': self.progress_percent,
            'next_payment_due': format_utc_iso(self.next_payment_due),
            'created_at': format_utc_iso(self.created_at),
        }


class LoanPayment(db.Model):
    __tablename__ = 'loan_payments'

    id = db.Column(db.Integer, primary_key=True)
    loan_id = db.Column(db.Integer, db.ForeignKey('loans.id', ondelete='CASCADE'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    amount = db.Column(MONEY, nullable=False)
    principal_amount = db.Column(MONEY, nullable=False)
    interest_amount = db.Column(MONEY, nullable=False)
    early_repayment_fee = db.Column(MONEY, nullable=False, default=Decimal('0'))
    remaining_balance = db.Column(MONEY, nullable=False)
    payment_week = db.Column(db.Integer, nullable=False)
    payment_type = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, default=_utc_now)

    __table_args__ = (
        db.CheckConstraint(
            "payment_type IN ('scheduled', 'early', 'full_repayment')",
            name='ck_loan_payments_type',
        ),
    )


# -------------------- QUIZZES --------------------

class QuizSettings(db.Model):
    """Reward schedule for a tenant's daily quiz."""
    __tablename__ = 'quiz_settings'

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False, unique=True)
    participation_reward = db.Column(db.Integer, nullable=False, default=1000)
    correct_answer_reward = db.Column(db.Integer, nullable=False, default=1500)
    perfect_score_bonus = db.Column(db.Integer, nullable=False, default=1500)
    updated_at = db.Column(db.DateTime, default=_utc_now, onupdate=_utc_now)


class DailyQuiz(db.Model):
    __tablename__ = 'daily_quizzes'

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False)
    quiz_date = db.Column(db.Date, nullable=False)
    # [{"question": ..., "options": [...], "correct_answer": ..., "explanation": ...}]
    questions = db.Column(db.JSON, nullable=False)
    created_at = db.Column(db.DateTime, default=_utc_now)

    attempts = db.relationship(
        'QuizAttempt',
        backref='daily_quiz',
        lazy='dynamic',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    __table_args__ = (
        db.UniqueConstraint('teacher_id', 'quiz_date', name='uq_daily_quizzes_teacher_date'),
    )

    def public_questions(self):
        """Questions without answers, for students."""
        return [
            {
                'index': index,
                'question': question.get('question'),
                'options': question.get('options') or [],
            }
            for index, question in enumerate(self.questions or [])
        ]


class QuizAttempt(db.Model):
    __tablename__ = 'quiz_attempts'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    daily_quiz_id = db.Column(db.Integer, db.ForeignKey('daily_quizzes.id', ondelete='CASCADE'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('admins.id', ondelete='CASCADE'), nullable=False)
    answers = db.Column(db.JSON, nullable=True)
    correct_count = db.Column(db.Integer, nullable=False, default=0)
    total_questions = db.Column(db.Integer, nullable=False, default=0)
    participation_reward = db.Column(db.Integer, nullable=False, default=0)
    score_reward = db.Column(db.Integer, nullable=False, default=0)
    bonus_reward = db.Column(db.Integer, nullable=False, default=0)
    total_reward = db.Column(db.Integer, nullable=False, default=0)
    reward_paid = db.Column(db.Boolean, nullable=False, default=False)
    reward_paid_at = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='in_progress')
    started_at = db.Column(db.DateTime, default=_utc_now)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.CheckConstraint("status IN ('in_progress', 'completed')", name='ck_quiz_attempts_status'),
        # One completed attempt per student per quiz, enforced by the database
        db.Index(
            'uq_quiz_attempts_completed',
            'student_id',
            'daily_quiz_id',
            unique=True,
            sqlite_where=db.text("status = 'completed'"),
            postgresql_where=db.text("status = 'completed'"),
        ),
        db.Index('ix_quiz_attempts_unpaid', 'status', 'reward_paid'),
    )

    def to_dict(self):
        from classbank.utils.helpers import format_utc_iso
        return {
            'id': self.id,
            'daily_quiz_id': self.daily_quiz_id,
            'correct_count': self.correct_count,
            'total_questions': self.total_questions,
            'participation_reward': self.participation_reward,
            'score_reward': self.score_reward,
            'bonus_reward': self.bonus_reward,
            'total_reward': self.total_reward,
            'reward_paid': self.reward_paid,
            'reward_paid_at': format_utc_iso(self.reward_paid_at),
            'status': self.status,
        }


__all__ = [
    'ACCOUNT_TYPES',
    'Admin',
    'Student',
    'Account',
    'EconomicEntity',
    'EntityAccount',
    'Transaction',
    'Seat',
    'SeatTransaction',
    'MarketSettings',
    'MarketAsset',
    'PortfolioHolding',
    'AssetTransaction',
    'Loan',
    'LoanPayment',
    'QuizSettings',
    'DailyQuiz',
    'QuizAttempt',
]
