"""investments and transaction type check

Revision ID: 0002_investments_and_transaction_types
Revises: 0001_initial_ledger_schema
Create Date: 2026-10-19 15:00:00.000000

Adds the market asset, portfolio holding and asset transaction tables, and
constrains transactions.transaction_type to the known ledger types.

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_investments_and_transaction_types'
down_revision = '0001_initial_ledger_schema'
branch_labels = None
depends_on = None

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
TRANSACTION_TYPE_CHECK = "transaction_type IN (" + ", ".join(f"'{t}'" for t in TRANSACTION_TYPES) + ")"


def upgrade():
    with op.batch_alter_table('transactions', schema=None) as batch_op:
        batch_op.create_check_constraint('ck_transactions_type', TRANSACTION_TYPE_CHECK)

    op.create_table(
        'market_assets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('symbol', sa.String(length=20), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('asset_type', sa.String(length=20), nullable=False),
        sa.Column('current_price', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('min_quantity', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('current_price > 0', name='ck_market_assets_price_positive'),
        sa.CheckConstraint(
            "asset_type IN ('stock', 'crypto', 'commodity', 'etf')", name='ck_market_assets_type'
        ),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('teacher_id', 'symbol', name='uq_market_assets_teacher_symbol')
    )

    op.create_table(
        'portfolio_holdings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('student_id', sa.Integer(), nullable=False),
        sa.Column('asset_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('average_price', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('total_invested', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('quantity > 0', name='ck_portfolio_holdings_quantity_positive'),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['asset_id'], ['market_assets.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('student_id', 'asset_id', name='uq_portfolio_holdings_student_asset')
    )

    op.create_table(
        'asset_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('student_id', sa.Integer(), nullable=True),
        sa.Column('asset_id', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(length=10), nullable=False),
        sa.Column('quantity', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('price', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('total_amount', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('fee', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('account_type', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("transaction_type IN ('buy', 'sell')", name='ck_asset_transactions_type'),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['asset_id'], ['market_assets.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_asset_transactions_student', 'asset_transactions', ['student_id'])


def downgrade():
    op.drop_index('ix_asset_transactions_student', table_name='asset_transactions')
    op.drop_table('asset_transactions')
    op.drop_table('portfolio_holdings')
    op.drop_table('market_assets')
    with op.batch_alter_table('transactions', schema=None) as batch_op:
        batch_op.drop_constraint('ck_transactions_type', type_='check')
