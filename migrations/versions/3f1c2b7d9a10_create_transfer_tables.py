"""Create transfers and download_attempts tables

Revision ID: 3f1c2b7d9a10
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c2b7d9a10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'transfers',
        sa.Column('id', sa.String(length=32), primary_key=True),
        sa.Column('original_file_name', sa.String(length=255), nullable=False),
        sa.Column('stored_file_name', sa.String(length=300), nullable=False),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False),
        sa.Column('content_type', sa.String(length=255), nullable=False),
        sa.Column('payload_locator', sa.String(length=255), nullable=False),
        sa.Column('payload_hash', sa.String(length=64), nullable=False),
        sa.Column('encryption_key', sa.LargeBinary(), nullable=False),
        sa.Column('access_token_digest', sa.String(length=64), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('max_downloads', sa.Integer(), nullable=False),
        sa.Column('current_downloads', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('sender_email', sa.String(length=320), nullable=False),
        sa.Column('sender_name', sa.String(length=255), nullable=False),
        sa.Column('recipient_email', sa.String(length=320), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
    )
    op.create_index(
        'ix_transfers_access_token_digest',
        'transfers',
        ['access_token_digest'],
        unique=True,
    )
    op.create_index(
        'ix_transfers_expires_at',
        'transfers',
        ['expires_at'],
        unique=False,
    )

    op.create_table(
        'download_attempts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'transfer_id',
            sa.String(length=32),
            sa.ForeignKey('transfers.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('source_address', sa.String(length=64), nullable=False),
        sa.Column('user_agent', sa.String(length=512), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
    )
    op.create_index(
        'ix_download_attempts_transfer_id',
        'download_attempts',
        ['transfer_id'],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index('ix_download_attempts_transfer_id', table_name='download_attempts')
    op.drop_table('download_attempts')
    op.drop_index('ix_transfers_expires_at', table_name='transfers')
    op.drop_index('ix_transfers_access_token_digest', table_name='transfers')
    op.drop_table('transfers')
