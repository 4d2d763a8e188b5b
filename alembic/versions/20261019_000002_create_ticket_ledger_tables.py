"""Create ticket ledger tables

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19

This migration creates the ticket (credit) ledger:
- ticket_accounts: one balance per student, never negative
- ticket_recharges: ticket purchases reconciled from payment webhooks
- ticket_transactions: append-only balance movements

Filtered unique indexes enforce the idempotency rules at the database level:
- one DEBIT and one refund CREDIT per (account, lesson)
- one CREDIT and one reversal DEBIT per recharge
- one recharge per provider transaction id
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261019_000002'
down_revision: Union[str, None] = '20261019_000001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _create_filtered_unique_index(name: str, table: str, columns: list, where: str) -> None:
    clause = sa.text(where)
    op.create_index(
        name,
        table,
        columns,
        unique=True,
        sqlite_where=clause,
        postgresql_where=clause,
        mssql_where=clause,
    )


def upgrade() -> None:
    """Create the ticket ledger tables."""
    op.create_table(
        'ticket_accounts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', sa.String(length=36), nullable=False),
        sa.Column('student_id', sa.Integer(), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('balance >= 0', name='ck_ticket_accounts_balance_non_negative'),
        sa.ForeignKeyConstraint(
            ['student_id'],
            ['students.id'],
            name='fk_ticket_accounts_student_id',
            ondelete='RESTRICT'
        ),
    )
    op.create_index('ix_ticket_accounts_uuid', 'ticket_accounts', ['uuid'], unique=True)
    op.create_index('ix_ticket_accounts_student_id', 'ticket_accounts', ['student_id'], unique=True)

    op.create_table(
        'ticket_recharges',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', sa.String(length=36), nullable=False),
        sa.Column('student_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=19, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('tickets_credited', sa.Integer(), nullable=False),
        sa.Column(
            'status',
            sa.Enum(
                'PENDING', 'SUCCESS', 'FAILED', 'REFUNDED',
                name='ticket_recharge_status',
                native_enum=False,
                create_constraint=True,
                length=20
            ),
            nullable=False,
            server_default='PENDING'
        ),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('comment', sa.String(length=500), nullable=True),
        sa.Column('external_transaction_id', sa.String(length=150), nullable=True),
        sa.Column('raw_payload', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['student_id'],
            ['students.id'],
            name='fk_ticket_recharges_student_id',
            ondelete='RESTRICT'
        ),
    )
    op.create_index('ix_ticket_recharges_uuid', 'ticket_recharges', ['uuid'], unique=True)
    op.create_index('ix_ticket_recharges_student_id', 'ticket_recharges', ['student_id'])
    op.create_index('ix_ticket_recharges_status', 'ticket_recharges', ['status'])
    op.create_index('ix_ticket_recharges_created_at', 'ticket_recharges', ['created_at'])
    _create_filtered_unique_index(
        'uq_ticket_recharges_external_transaction_id',
        'ticket_recharges',
        ['external_transaction_id'],
        where='external_transaction_id IS NOT NULL',
    )

    op.create_table(
        'ticket_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', sa.String(length=36), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('recharge_id', sa.Integer(), nullable=True),
        sa.Column('lesson_id', sa.BigInteger(), nullable=True),
        sa.Column(
            'type',
            sa.Enum(
                'DEBIT', 'CREDIT',
                name='ticket_transaction_type',
                native_enum=False,
                create_constraint=True,
                length=10
            ),
            nullable=False
        ),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('amount > 0', name='ck_ticket_transactions_amount_positive'),
        sa.CheckConstraint('balance_after >= 0', name='ck_ticket_transactions_balance_after_non_negative'),
        sa.ForeignKeyConstraint(
            ['account_id'],
            ['ticket_accounts.id'],
            name='fk_ticket_transactions_account_id',
            ondelete='RESTRICT'
        ),
        sa.ForeignKeyConstraint(
            ['recharge_id'],
            ['ticket_recharges.id'],
            name='fk_ticket_transactions_recharge_id',
            ondelete='RESTRICT'
        ),
    )
    op.create_index('ix_ticket_transactions_uuid', 'ticket_transactions', ['uuid'], unique=True)
    op.create_index('ix_ticket_transactions_account_id', 'ticket_transactions', ['account_id'])
    op.create_index('ix_ticket_transactions_recharge_id', 'ticket_transactions', ['recharge_id'])
    op.create_index('ix_ticket_transactions_lesson_id', 'ticket_transactions', ['lesson_id'])
    op.create_index('ix_ticket_transactions_created_at', 'ticket_transactions', ['created_at'])
    _create_filtered_unique_index(
        'uq_ticket_transactions_lesson_debit',
        'ticket_transactions',
        ['account_id', 'lesson_id'],
        where="type = 'DEBIT' AND lesson_id IS NOT NULL",
    )
    _create_filtered_unique_index(
        'uq_ticket_transactions_lesson_refund',
        'ticket_transactions',
        ['account_id', 'lesson_id'],
        where="type = 'CREDIT' AND lesson_id IS NOT NULL",
    )
    _create_filtered_unique_index(
        'uq_ticket_transactions_recharge_credit',
        'ticket_transactions',
        ['recharge_id'],
        where="type = 'CREDIT' AND recharge_id IS NOT NULL",
    )
    _create_filtered_unique_index(
        'uq_ticket_transactions_recharge_reversal',
        'ticket_transactions',
        ['recharge_id'],
        where="type = 'DEBIT' AND recharge_id IS NOT NULL",
    )


def downgrade() -> None:
    """Drop the ticket ledger tables."""
    op.drop_table('ticket_transactions')
    op.drop_table('ticket_recharges')
    op.drop_table('ticket_accounts')
