"""Create ledger indexer tables

Revision ID: 5e1d9c2a7b40
Revises:
Create Date: 2026-10-19 00:01:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '5e1d9c2a7b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Raw ledger events (one row per observed log)
    op.create_table('ledger_event',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_name', sa.String(length=100), nullable=False),
        sa.Column('contract_name', sa.String(length=100), nullable=True),
        sa.Column('contract_address', sa.String(length=42), nullable=False),
        sa.Column('transaction_hash', sa.String(length=66), nullable=False),
        sa.Column('block_number', sa.BigInteger(), nullable=False),
        sa.Column('log_index', sa.Integer(), nullable=False),
        sa.Column('args_json', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_hash', 'log_index', name='uq_ledger_event_tx_log'),
    )
    op.create_index('idx_ledger_event_block', 'ledger_event', ['block_number'])
    op.create_index('idx_ledger_event_processed', 'ledger_event', ['processed'])
    op.create_index('idx_ledger_event_name', 'ledger_event', ['event_name'])

    # Ingestion checkpoint per watched contract set
    op.create_table('ingest_checkpoint',
        sa.Column('watch_set', sa.String(length=64), nullable=False),
        sa.Column('last_block', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('watch_set'),
    )

    # Patients
    op.create_table('indexed_patient',
        sa.Column('patient_address', sa.String(length=42), nullable=False),
        sa.Column('profile_cid', sa.String(length=128), nullable=True),
        sa.Column('profile_metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('profile_hydrated_at', sa.DateTime(), nullable=True),
        sa.Column('profile_hydration_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('profile_hydration_attempted_at', sa.DateTime(), nullable=True),
        sa.Column('total_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active_consents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_activity', sa.DateTime(), nullable=True),
        sa.Column('registration_tx_hash', sa.String(length=66), nullable=True),
        sa.Column('registration_block_number', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('patient_address'),
    )
    op.create_index('idx_indexed_patient_last_activity', 'indexed_patient', ['last_activity'])

    # Providers
    op.create_table('indexed_provider',
        sa.Column('provider_address', sa.String(length=42), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('specialty', sa.String(length=100), nullable=True),
        sa.Column('license_number', sa.String(length=100), nullable=True),
        sa.Column('active_access_grants', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_records_uploaded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_activity', sa.DateTime(), nullable=True),
        sa.Column('registration_tx_hash', sa.String(length=66), nullable=True),
        sa.Column('registration_block_number', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('provider_address'),
    )
    op.create_index('idx_indexed_provider_specialty', 'indexed_provider', ['specialty'])

    # Medical records
    op.create_table('indexed_record',
        sa.Column('record_id', sa.String(length=100), nullable=False),
        sa.Column('patient_address', sa.String(length=42), nullable=False),
        sa.Column('provider_address', sa.String(length=42), nullable=True),
        sa.Column('record_cid', sa.String(length=128), nullable=False),
        sa.Column('record_metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('category', sa.String(length=50), nullable=True),
        sa.Column('record_date', sa.DateTime(), nullable=True),
        sa.Column('searchable_text', sa.Text(), nullable=True),
        sa.Column('hydrated_at', sa.DateTime(), nullable=True),
        sa.Column('hydration_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('hydration_attempted_at', sa.DateTime(), nullable=True),
        sa.Column('upload_tx_hash', sa.String(length=66), nullable=True),
        sa.Column('upload_block_number', sa.BigInteger(), nullable=True),
        sa.Column('upload_log_index', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('record_id'),
    )
    op.create_index('idx_indexed_record_patient', 'indexed_record', ['patient_address'])
    op.create_index('idx_indexed_record_provider', 'indexed_record', ['provider_address'])
    op.create_index('idx_indexed_record_category', 'indexed_record', ['category'])
    op.create_index('idx_indexed_record_date', 'indexed_record', ['record_date'])

    # Search entries
    op.create_table('search_entry',
        sa.Column('record_id', sa.String(length=100), nullable=False),
        sa.Column('patient_address', sa.String(length=42), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('keywords', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('category', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('record_id'),
    )
    op.create_index('idx_search_entry_patient', 'search_entry', ['patient_address'])
    op.create_index('idx_search_entry_category', 'search_entry', ['category'])

    # Access grants (never deleted; revocation is state)
    op.create_table('access_grant',
        sa.Column('grant_id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('patient_address', sa.String(length=42), nullable=False),
        sa.Column('provider_address', sa.String(length=42), nullable=False),
        sa.Column('access_type', sa.String(length=20), nullable=False),
        sa.Column('record_id', sa.String(length=100), nullable=True),
        sa.Column('expiry_timestamp', sa.BigInteger(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('grant_tx_hash', sa.String(length=66), nullable=False),
        sa.Column('grant_block_number', sa.BigInteger(), nullable=False),
        sa.Column('grant_log_index', sa.Integer(), nullable=False),
        sa.Column('revoke_tx_hash', sa.String(length=66), nullable=True),
        sa.Column('revoke_block_number', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('grant_id'),
        sa.UniqueConstraint('grant_tx_hash', 'grant_log_index', name='uq_access_grant_origin'),
    )
    op.create_index('idx_access_grant_patient', 'access_grant', ['patient_address'])
    op.create_index('idx_access_grant_provider', 'access_grant', ['provider_address'])
    op.create_index('idx_access_grant_record', 'access_grant', ['record_id'])
    op.create_index('idx_access_grant_active', 'access_grant', ['is_active', 'is_revoked'])

    # IPFS content cache
    op.create_table('content_cache_entry',
        sa.Column('cid', sa.String(length=128), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('fetched_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('last_accessed', sa.DateTime(), nullable=False),
        sa.Column('access_count', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('cid'),
    )
    op.create_index('idx_content_cache_expires_at', 'content_cache_entry', ['expires_at'])


def downgrade() -> None:
    op.drop_index('idx_content_cache_expires_at', table_name='content_cache_entry')
    op.drop_table('content_cache_entry')

    op.drop_index('idx_access_grant_active', table_name='access_grant')
    op.drop_index('idx_access_grant_record', table_name='access_grant')
    op.drop_index('idx_access_grant_provider', table_name='access_grant')
    op.drop_index('idx_access_grant_patient', table_name='access_grant')
    op.drop_table('access_grant')

    op.drop_index('idx_search_entry_category', table_name='search_entry')
    op.drop_index('idx_search_entry_patient', table_name='search_entry')
    op.drop_table('search_entry')

    op.drop_index('idx_indexed_record_date', table_name='indexed_record')
    op.drop_index('idx_indexed_record_category', table_name='indexed_record')
    op.drop_index('idx_indexed_record_provider', table_name='indexed_record')
    op.drop_index('idx_indexed_record_patient', table_name='indexed_record')
    op.drop_table('indexed_record')

    op.drop_index('idx_indexed_provider_specialty', table_name='indexed_provider')
    op.drop_table('indexed_provider')

    op.drop_index('idx_indexed_patient_last_activity', table_name='indexed_patient')
    op.drop_table('indexed_patient')

    op.drop_table('ingest_checkpoint')

    op.drop_index('idx_ledger_event_name', table_name='ledger_event')
    op.drop_index('idx_ledger_event_processed', table_name='ledger_event')
    op.drop_index('idx_ledger_event_block', table_name='ledger_event')
    op.drop_table('ledger_event')
