"""Create revenue-cycle schema

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '1a2b3c4d5e6f'
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, nullable=True, **kwargs):
    return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=nullable, **kwargs)


def _money(name, nullable=False, **kwargs):
    return sa.Column(name, sa.Numeric(precision=12, scale=2), nullable=nullable, **kwargs)


def upgrade():
    op.create_table('accounts',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('account_number', sa.String(length=100), nullable=False),
        sa.Column('guarantor_name', sa.String(length=200), nullable=True),
        _money('outstanding_balance', server_default='0'),
        _timestamp('balance_since'),
        _timestamp('last_statement_date'),
        _timestamp('last_payment_at'),
        sa.Column('payment_count', sa.Integer(), nullable=False, server_default='0'),
        _money('total_payments', server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        _timestamp('created_at', nullable=False, server_default=sa.text('now()')),
        _timestamp('updated_at', nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_accounts')),
    )
    op.create_index(op.f('ix_accounts_id'), 'accounts', ['id'], unique=False)
    op.create_index(op.f('ix_accounts_account_number'), 'accounts', ['account_number'], unique=True)
    op.create_index(op.f('ix_accounts_balance_since'), 'accounts', ['balance_since'], unique=False)

    op.create_table('claims',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('claim_number', sa.String(length=100), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('payer_id', sa.String(length=50), nullable=True),
        sa.Column('payer_name', sa.String(length=200), nullable=True),
        sa.Column('payer_type', sa.String(length=20), nullable=False, server_default='commercial'),
        sa.Column('service_date', sa.Date(), nullable=True),
        sa.Column('clinical_summary', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='draft'),
        _money('billed_amount'),
        _money('allowed_amount', nullable=True),
        _money('paid_amount', server_default='0'),
        _money('patient_responsibility', server_default='0'),
        sa.Column('clearinghouse_id', sa.String(length=100), nullable=True),
        _timestamp('submitted_at'),
        _timestamp('last_synced_at'),
        _timestamp('adjudicated_at'),
        sa.Column('void_reason', sa.Text(), nullable=True),
        sa.Column('rejection_reasons', sa.JSON(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        _timestamp('created_at', nullable=False, server_default=sa.text('now()')),
        _timestamp('updated_at', nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name=op.f('fk_claims_account_id_accounts')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_claims')),
    )
    for column, unique in (('id', False), ('claim_number', True), ('account_id', False), ('payer_id', False),
                           ('payer_type', False), ('service_date', False), ('status', False),
                           ('clearinghouse_id', False), ('submitted_at', False)):
        op.create_index(op.f(f'ix_claims_{column}'), 'claims', [column], unique=unique)

    op.create_table('claim_line_items',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('claim_id', sa.Integer(), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('service_date', sa.Date(), nullable=True),
        sa.Column('procedure_code', sa.String(length=20), nullable=True),
        sa.Column('diagnosis_codes', sa.JSON(), nullable=False),
        sa.Column('modifiers', sa.JSON(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        _money('unit_price'),
        sa.Column('line_outcome', sa.String(length=20), nullable=False, server_default='pending'),
        _money('paid_amount', server_default='0'),
        sa.ForeignKeyConstraint(['claim_id'], ['claims.id'], name=op.f('fk_claim_line_items_claim_id_claims')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_claim_line_items')),
        sa.UniqueConstraint('claim_id', 'line_number', name='uq_claim_line_items_claim_line'),
    )
    op.create_index(op.f('ix_claim_line_items_id'), 'claim_line_items', ['id'], unique=False)
    op.create_index(op.f('ix_claim_line_items_claim_id'), 'claim_line_items', ['claim_id'], unique=False)
    op.create_index(op.f('ix_claim_line_items_procedure_code'), 'claim_line_items', ['procedure_code'], unique=False)

    op.create_table('claim_status_history',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('claim_id', sa.Integer(), nullable=False),
        sa.Column('from_status', sa.String(length=30), nullable=False),
        sa.Column('to_status', sa.String(length=30), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('source', sa.String(length=50), nullable=False, server_default='system'),
        _timestamp('created_at', nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['claim_id'], ['claims.id'], name=op.f('fk_claim_status_history_claim_id_claims')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_claim_status_history')),
    )
    op.create_index(op.f('ix_claim_status_history_claim_id'), 'claim_status_history', ['claim_id'], unique=False)

    op.create_table('remittance_advices',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('batch_id', sa.String(length=100), nullable=False),
        sa.Column('payer_name', sa.String(length=200), nullable=True),
        sa.Column('payer_id', sa.String(length=50), nullable=True),
        _money('payment_amount', server_default='0'),
        _timestamp('payment_date'),
        _timestamp('received_at', nullable=False, server_default=sa.text('now()')),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='processing'),
        _timestamp('completed_at'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_remittance_advices')),
    )
    op.create_index(op.f('ix_remittance_advices_id'), 'remittance_advices', ['id'], unique=False)
    op.create_index(op.f('ix_remittance_advices_batch_id'), 'remittance_advices', ['batch_id'], unique=True)

    op.create_table('remittance_claim_records',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('remittance_id', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('claim_reference', sa.String(length=100), nullable=False),
        sa.Column('status_code', sa.String(length=10), nullable=True),
        _money('billed_amount'),
        _money('allowed_amount'),
        _money('paid_amount'),
        _money('patient_responsibility', server_default='0'),
        sa.Column('adjustments', sa.JSON(), nullable=False),
        sa.Column('line_adjustments', sa.JSON(), nullable=False),
        sa.Column('outcome', sa.String(length=40), nullable=False, server_default='pending'),
        sa.Column('outcome_detail', sa.Text(), nullable=True),
        sa.Column('claim_id', sa.Integer(), nullable=True),
        _timestamp('applied_at'),
        sa.ForeignKeyConstraint(['remittance_id'], ['remittance_advices.id'],
                                name=op.f('fk_remittance_claim_records_remittance_id_remittance_advices')),
        sa.ForeignKeyConstraint(['claim_id'], ['claims.id'], name=op.f('fk_remittance_claim_records_claim_id_claims')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_remittance_claim_records')),
    )
    for column in ('id', 'remittance_id', 'claim_reference', 'outcome', 'claim_id'):
        op.create_index(op.f(f'ix_remittance_claim_records_{column}'), 'remittance_claim_records', [column], unique=False)

    op.create_table('denials',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('claim_id', sa.Integer(), nullable=False),
        sa.Column('line_item_id', sa.Integer(), nullable=True),
        sa.Column('group_code', sa.String(length=5), nullable=True),
        sa.Column('reason_code', sa.String(length=20), nullable=False),
        sa.Column('reason_text', sa.Text(), nullable=True),
        _money('denied_amount', server_default='0'),
        sa.Column('category', sa.String(length=40), nullable=True),
        sa.Column('priority', sa.String(length=10), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='new'),
        _timestamp('created_at', nullable=False, server_default=sa.text('now()')),
        _timestamp('analyzed_at'),
        _timestamp('resolved_at'),
        sa.ForeignKeyConstraint(['claim_id'], ['claims.id'], name=op.f('fk_denials_claim_id_claims')),
        sa.ForeignKeyConstraint(['line_item_id'], ['claim_line_items.id'], name=op.f('fk_denials_line_item_id_claim_line_items')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_denials')),
    )
    for column in ('id', 'claim_id', 'reason_code', 'category', 'status', 'created_at'):
        op.create_index(op.f(f'ix_denials_{column}'), 'denials', [column], unique=False)

    op.create_table('appeals',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('denial_id', sa.Integer(), nullable=False),
        sa.Column('appeal_type', sa.String(length=30), nullable=False, server_default='standard'),
        sa.Column('letter_content', sa.JSON(), nullable=False),
        sa.Column('supporting_documents', sa.JSON(), nullable=False),
        _timestamp('generated_at', nullable=False, server_default=sa.text('now()')),
        _timestamp('resubmission_deadline', nullable=False),
        _timestamp('submitted_at'),
        sa.Column('outcome', sa.String(length=20), nullable=False, server_default='pending'),
        _money('recovered_amount', nullable=True),
        _timestamp('outcome_recorded_at'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['denial_id'], ['denials.id'], name=op.f('fk_appeals_denial_id_denials')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_appeals')),
    )
    for column in ('id', 'denial_id', 'outcome'):
        op.create_index(op.f(f'ix_appeals_{column}'), 'appeals', [column], unique=False)

    op.create_table('risk_scores',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('collection_probability', sa.Numeric(precision=6, scale=4), nullable=False),
        sa.Column('aging_bucket', sa.String(length=10), nullable=False),
        sa.Column('days_outstanding', sa.Integer(), nullable=False),
        _money('outstanding_balance'),
        sa.Column('risk_factors', sa.JSON(), nullable=False),
        sa.Column('model_name', sa.String(length=30), nullable=False),
        _timestamp('computed_at', nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name=op.f('fk_risk_scores_account_id_accounts')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_risk_scores')),
    )
    op.create_index(op.f('ix_risk_scores_id'), 'risk_scores', ['id'], unique=False)
    # The upsert in the scoring batch conflicts on this index
    op.create_index(op.f('ix_risk_scores_account_id'), 'risk_scores', ['account_id'], unique=True)
    op.create_index(op.f('ix_risk_scores_aging_bucket'), 'risk_scores', ['aging_bucket'], unique=False)

    op.create_table('collection_workflows',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('workflow_type', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        _timestamp('started_at', nullable=False, server_default=sa.text('now()')),
        _timestamp('completed_at'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name=op.f('fk_collection_workflows_account_id_accounts')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_collection_workflows')),
    )
    for column in ('id', 'account_id', 'status'):
        op.create_index(op.f(f'ix_collection_workflows_{column}'), 'collection_workflows', [column], unique=False)

    op.create_table('collection_tasks',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('workflow_id', sa.Integer(), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('action_type', sa.String(length=30), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('priority', sa.String(length=10), nullable=False, server_default='medium'),
        _timestamp('scheduled_for', nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='scheduled'),
        sa.Column('source', sa.String(length=20), nullable=False, server_default='workflow'),
        sa.Column('on_hold', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        _timestamp('executed_at'),
        _timestamp('created_at', nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name=op.f('fk_collection_tasks_account_id_accounts')),
        sa.ForeignKeyConstraint(['workflow_id'], ['collection_workflows.id'],
                                name=op.f('fk_collection_tasks_workflow_id_collection_workflows')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_collection_tasks')),
    )
    for column in ('id', 'account_id', 'workflow_id', 'scheduled_for', 'status'):
        op.create_index(op.f(f'ix_collection_tasks_{column}'), 'collection_tasks', [column], unique=False)

    op.create_table('payment_plans',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('account_id', sa.Integer(), nullable=False),
        _money('total_amount'),
        _money('monthly_payment'),
        sa.Column('number_of_payments', sa.Integer(), nullable=False),
        _money('remaining_balance'),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        _timestamp('created_at', nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name=op.f('fk_payment_plans_account_id_accounts')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_payment_plans')),
    )
    for column in ('id', 'account_id', 'status'):
        op.create_index(op.f(f'ix_payment_plans_{column}'), 'payment_plans', [column], unique=False)

    op.create_table('payment_plan_installments',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('installment_number', sa.Integer(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        _money('amount'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        _timestamp('paid_at'),
        sa.ForeignKeyConstraint(['plan_id'], ['payment_plans.id'], name=op.f('fk_payment_plan_installments_plan_id_payment_plans')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_payment_plan_installments')),
    )
    op.create_index(op.f('ix_payment_plan_installments_plan_id'), 'payment_plan_installments', ['plan_id'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        _timestamp('timestamp', nullable=False, server_default=sa.text('now()')),
        sa.Column('user_id', sa.String(length=100), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('resource', sa.String(length=255), nullable=True),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=100), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_audit_logs')),
    )
    for column in ('id', 'timestamp', 'user_id', 'action', 'resource', 'resource_id'):
        op.create_index(op.f(f'ix_audit_logs_{column}'), 'audit_logs', [column], unique=False)


def downgrade():
    for table in ('audit_logs', 'payment_plan_installments', 'payment_plans', 'collection_tasks',
                  'collection_workflows', 'risk_scores', 'appeals', 'denials', 'remittance_claim_records',
                  'remittance_advices', 'claim_status_history', 'claim_line_items', 'claims', 'accounts'):
        op.drop_table(table)
