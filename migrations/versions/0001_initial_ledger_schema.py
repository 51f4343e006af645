"""initial ledger schema

Revision ID: 0001_initial_ledger_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

Creates the tenant, student, account, economic entity, ledger, seat market,
loan and daily quiz tables.

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial_ledger_schema'
down_revision = None
branch_labels = None
depends_on = None

ACCOUNT_TYPE_CHECK = "account_type IN ('checking', 'savings', 'investment')"


def upgrade():
    op.create_table(
        'admins',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=80), nullable=False),
        sa.Column('display_name', sa.String(length=100), nullable=True),
        sa.Column('timezone', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username')
    )

    op.create_table(
        'students',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.LargeBinary(), nullable=False),
        sa.Column('credit_score', sa.Integer(), nullable=False),
        sa.Column('weekly_allowance', sa.Numeric(14, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('credit_score BETWEEN 350 AND 850', name='ck_students_credit_score_range'),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_students_teacher_id', 'students', ['teacher_id'])

    op.create_table(
        'accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('student_id', sa.Integer(), nullable=False),
        sa.Column('account_type', sa.String(length=20), nullable=False),
        sa.Column('balance', sa.Numeric(14, 2), nullable=False),
        sa.Column('interest_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('balance >= 0', name='ck_accounts_balance_non_negative'),
        sa.CheckConstraint(ACCOUNT_TYPE_CHECK, name='ck_accounts_account_type'),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('student_id', 'account_type', name='uq_accounts_student_type')
    )

    op.create_table(
        'economic_entities',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('entity_type', sa.String(length=20), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "entity_type IN ('government', 'bank', 'securities')",
            name='ck_economic_entities_entity_type',
        ),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('teacher_id', 'entity_type', name='uq_economic_entities_teacher_type')
    )

    op.create_table(
        'economic_entity_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('account_type', sa.String(length=20), nullable=False),
        sa.Column('balance', sa.Numeric(14, 2), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('balance >= 0', name='ck_entity_accounts_balance_non_negative'),
        sa.CheckConstraint(ACCOUNT_TYPE_CHECK, name='ck_entity_accounts_account_type'),
        sa.ForeignKeyConstraint(['entity_id'], ['economic_entities.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('entity_id', 'account_type', name='uq_entity_accounts_entity_type')
    )

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('from_student_id', sa.Integer(), nullable=True),
        sa.Column('from_entity_id', sa.Integer(), nullable=True),
        sa.Column('from_account_type', sa.String(length=20), nullable=True),
        sa.Column('to_student_id', sa.Integer(), nullable=True),
        sa.Column('to_entity_id', sa.Integer(), nullable=True),
        sa.Column('to_account_type', sa.String(length=20), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('transaction_type', sa.String(length=30), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('amount >= 0', name='ck_transactions_amount_non_negative'),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['from_student_id'], ['students.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['from_entity_id'], ['economic_entities.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['to_student_id'], ['students.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['to_entity_id'], ['economic_entities.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_transactions_teacher_created', 'transactions', ['teacher_id', 'created_at'])
    op.create_index('ix_transactions_from_student', 'transactions', ['from_student_id'])
    op.create_index('ix_transactions_to_student', 'transactions', ['to_student_id'])
    op.create_index('ix_transactions_type', 'transactions', ['transaction_type'])

    op.create_table(
        'seats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('seat_number', sa.Integer(), nullable=False),
        sa.Column('row_position', sa.Integer(), nullable=False),
        sa.Column('column_position', sa.Integer(), nullable=False),
        sa.Column('current_price', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=True),
        sa.Column('purchase_price', sa.Integer(), nullable=True),
        sa.Column('purchase_date', sa.DateTime(), nullable=True),
        sa.Column('is_available', sa.Boolean(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['owner_id'], ['students.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('teacher_id', 'seat_number', name='uq_seats_teacher_number')
    )
    op.create_index('ix_seats_owner_id', 'seats', ['owner_id'])

    op.create_table(
        'seat_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('seat_id', sa.Integer(), nullable=False),
        sa.Column('seat_number', sa.Integer(), nullable=False),
        sa.Column('buyer_id', sa.Integer(), nullable=True),
        sa.Column('seller_id', sa.Integer(), nullable=True),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(length=10), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("transaction_type IN ('buy', 'sell')", name='ck_seat_transactions_type'),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['seat_id'], ['seats.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['buyer_id'], ['students.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['seller_id'], ['students.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'market_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('manual_student_count', sa.Integer(), nullable=True),
        sa.Column('layout_config', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('teacher_id')
    )

    op.create_table(
        'loans',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('student_id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('interest_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('duration_weeks', sa.Integer(), nullable=False),
        sa.Column('weekly_payment', sa.Numeric(14, 2), nullable=False),
        sa.Column('total_payment', sa.Numeric(14, 2), nullable=False),
        sa.Column('remaining_balance', sa.Numeric(14, 2), nullable=False),
        sa.Column('remaining_weeks', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('next_payment_due', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('defaulted_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint("status IN ('active', 'completed', 'defaulted')", name='ck_loans_status'),
        sa.CheckConstraint('remaining_balance >= 0', name='ck_loans_remaining_non_negative'),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_loans_student_status', 'loans', ['student_id', 'status'])
    op.create_index('ix_loans_teacher_status', 'loans', ['teacher_id', 'status'])

    op.create_table(
        'loan_payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('loan_id', sa.Integer(), nullable=False),
        sa.Column('student_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('principal_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('interest_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('early_repayment_fee', sa.Numeric(14, 2), nullable=False),
        sa.Column('remaining_balance', sa.Numeric(14, 2), nullable=False),
        sa.Column('payment_week', sa.Integer(), nullable=False),
        sa.Column('payment_type', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "payment_type IN ('scheduled', 'early', 'full_repayment')",
            name='ck_loan_payments_type',
        ),
        sa.ForeignKeyConstraint(['loan_id'], ['loans.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'quiz_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('participation_reward', sa.Integer(), nullable=False, server_default='1000'),
        sa.Column('correct_answer_reward', sa.Integer(), nullable=False, server_default='1500'),
        sa.Column('perfect_score_bonus', sa.Integer(), nullable=False, server_default='1500'),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('teacher_id')
    )

    op.create_table(
        'daily_quizzes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('quiz_date', sa.Date(), nullable=False),
        sa.Column('questions', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('teacher_id', 'quiz_date', name='uq_daily_quizzes_teacher_date')
    )

    op.create_table(
        'quiz_attempts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('student_id', sa.Integer(), nullable=False),
        sa.Column('daily_quiz_id', sa.Integer(), nullable=False),
        sa.Column('teacher_id', sa.Integer(), nullable=False),
        sa.Column('answers', sa.JSON(), nullable=True),
        sa.Column('correct_count', sa.Integer(), nullable=False),
        sa.Column('total_questions', sa.Integer(), nullable=False),
        sa.Column('participation_reward', sa.Integer(), nullable=False),
        sa.Column('score_reward', sa.Integer(), nullable=False),
        sa.Column('bonus_reward', sa.Integer(), nullable=False),
        sa.Column('total_reward', sa.Integer(), nullable=False),
        sa.Column('reward_paid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reward_paid_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint("status IN ('in_progress', 'completed')", name='ck_quiz_attempts_status'),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['daily_quiz_id'], ['daily_quizzes.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['teacher_id'], ['admins.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    # One completed attempt per student per quiz
    op.create_index(
        'uq_quiz_attempts_completed',
        'quiz_attempts',
        ['student_id', 'daily_quiz_id'],
        unique=True,
        sqlite_where=sa.text("status = 'completed'"),
        postgresql_where=sa.text("status = 'completed'"),
    )
    op.create_index('ix_quiz_attempts_unpaid', 'quiz_attempts', ['status', 'reward_paid'])


def downgrade():
    op.drop_index('ix_quiz_attempts_unpaid', table_name='quiz_attempts')
    op.drop_index('uq_quiz_attempts_completed', table_name='quiz_attempts')
    op.drop_table('quiz_attempts')
    op.drop_table('daily_quizzes')
    op.drop_table('quiz_settings')
    op.drop_table('loan_payments')
    op.drop_index('ix_loans_teacher_status', table_name='loans')
    op.drop_index('ix_loans_student_status', table_name='loans')
    op.drop_table('loans')
    op.drop_table('market_settings')
    op.drop_table('seat_transactions')
    op.drop_index('ix_seats_owner_id', table_name='seats')
    op.drop_table('seats')
    op.drop_index('ix_transactions_type', table_name='transactions')
    op.drop_index('ix_transactions_to_student', table_name='transactions')
    op.drop_index('ix_transactions_from_student', table_name='transactions')
    op.drop_index('ix_transactions_teacher_created', table_name='transactions')
    op.drop_table('transactions')
    op.drop_table('economic_entity_accounts')
    op.drop_table('economic_entities')
    op.drop_table('accounts')
    op.drop_index('ix_students_teacher_id', table_name='students')
    op.drop_table('students')
    op.drop_table('admins')
