"""
Economy-wide constants for classbank.

Policy values that are not tenant-configurable live here. Anything that can
be overridden per deployment is read from ``current_app.config`` first and
falls back to these values.
"""

from decimal import Decimal

ACCOUNT_TYPES = ('checking', 'savings', 'investment')

ENTITY_TYPES = ('government', 'bank', 'securities')

# Starting checking balance for each economic entity on tenant bootstrap
ENTITY_INITIAL_BALANCES = {
    'government': Decimal('100000000'),
    'bank': Decimal('50000000'),
    'securities': Decimal('0'),
}

ENTITY_DISPLAY_NAMES = {
    'government': 'Government',
    'bank': 'Bank',
    'securities': 'Securities',
}

TRANSACTION_TYPES = (
    'transfer',
    'account_transfer',
    'allowance',
    'tax_payment',
    'loan_disbursement',
    'loan_repayment',
    'quiz_reward',
    'investment_purchase',
    'investment_sale',
    'investment_fee',
    'real_estate_purchase',
    'real_estate_sale',
    'credit_adjustment',
    'account_closure',
)

# -------------------- SEAT MARKET --------------------

SEAT_PRICE_ASSET_RATIO = Decimal('0.6')
DEFAULT_SEAT_PRICE = 100000
MIN_SEAT_PRICE = 10000

# 5 columns of 6 seats
DEFAULT_SEAT_LAYOUT = [{'column': column, 'seats': 6} for column in range(1, 6)]

# -------------------- INVESTMENTS --------------------

# Brokerage fee on every trade, credited to the securities entity
INVESTMENT_BROKERAGE_FEE_RATE = Decimal('0.001')
# Trading tax on sales, credited to the government
INVESTMENT_SELL_TAX_RATE = Decimal('0.002')

# -------------------- CREDIT AND LOANS --------------------

MIN_CREDIT_SCORE = 350
MAX_CREDIT_SCORE = 850
DEFAULT_CREDIT_SCORE = 700
CREDIT_ADJUSTMENT_STEPS = (-20, -15, -10, -5, 5, 10, 15, 20)

# (min_score, max_score, annual_rate, max_amount, max_weeks, grade)
CREDIT_RATE_TABLE = (
    (800, 850, Decimal('3.0'), 1000000, 52, 'Excellent'),
    (700, 799, Decimal('5.0'), 700000, 40, 'Good'),
    (600, 699, Decimal('8.0'), 500000, 26, 'Fair'),
    (500, 599, Decimal('12.0'), 300000, 16, 'Poor'),
    (350, 499, Decimal('18.0'), 100000, 8, 'Very poor'),
)

MAX_ACTIVE_LOANS = 3
LOAN_DEFAULT_GRACE_DAYS = 14
LOAN_DEFAULT_CREDIT_PENALTY = 50
EARLY_REPAYMENT_FEE_RATIO = Decimal('0.5')
LOAN_PAYMENT_INTERVAL_DAYS = 7

# -------------------- QUIZ REWARDS --------------------

DEFAULT_PARTICIPATION_REWARD = 1000
DEFAULT_CORRECT_ANSWER_REWARD = 1500
DEFAULT_PERFECT_SCORE_BONUS = 1500

# -------------------- LISTINGS --------------------

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 200
