"""users, games, players and the anti-manipulation audit tables

Revision ID: 5a7c9e1b3d20
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5a7c9e1b3d20'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(64), nullable=False),
        sa.Column('password_hash', sa.String(256), nullable=False),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('age_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('age_level', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_user_username', 'user', ['username'], unique=True)

    op.create_table(
        'game',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('game_code', sa.String(4), nullable=True),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('phase', sa.String(32), nullable=False, server_default='lobby'),
        sa.Column('age_rating', sa.Integer(), nullable=True),
        sa.Column('selected_categories', sa.Text(), nullable=True),
        sa.Column('current_round', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.Float(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
    )
    op.create_index('ix_game_game_code', 'game', ['game_code'], unique=True)

    op.create_table(
        'player',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(64), nullable=False),
        sa.Column('game_id', sa.Integer(), sa.ForeignKey('game.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('score_updated_at', sa.Float(), nullable=True),
    )

    op.create_table(
        'violation_record',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_violation_at', sa.Float(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='clean'),
        sa.Column('version', sa.Integer(), nullable=False),
    )
    op.create_index('ix_violation_record_user_id', 'violation_record', ['user_id'], unique=True)

    op.create_table(
        'audit_entry',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('timestamp', sa.Float(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('record_id', sa.String(64), nullable=True),
        sa.Column('kind', sa.String(32), nullable=False),
        sa.Column('reason', sa.String(64), nullable=True),
        sa.Column('field', sa.String(64), nullable=True),
        sa.Column('previous_value', sa.Text(), nullable=True),
        sa.Column('corrective_value', sa.Text(), nullable=True),
        sa.Column('action', sa.String(32), nullable=False),
    )
    op.create_index('ix_audit_entry_timestamp', 'audit_entry', ['timestamp'])
    op.create_index('ix_audit_entry_user_id', 'audit_entry', ['user_id'])

    op.create_table(
        'admin_alert',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('recipient', sa.String(256), nullable=False),
        sa.Column('sender', sa.String(256), nullable=False),
        sa.Column('subject', sa.String(256), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.Float(), nullable=False),
    )

    op.create_table(
        'game_deletion_audit',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('game_code', sa.String(4), nullable=False),
        sa.Column('host_id', sa.Integer(), nullable=True),
        sa.Column('player_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deleted_by', sa.Integer(), nullable=True),
        sa.Column('deleted_at', sa.Float(), nullable=False),
    )


def downgrade():
    op.drop_table('game_deletion_audit')
    op.drop_table('admin_alert')
    op.drop_index('ix_audit_entry_user_id', table_name='audit_entry')
    op.drop_index('ix_audit_entry_timestamp', table_name='audit_entry')
    op.drop_table('audit_entry')
    op.drop_index('ix_violation_record_user_id', table_name='violation_record')
    op.drop_table('violation_record')
    op.drop_table('player')
    op.drop_index('ix_game_game_code', table_name='game')
    op.drop_table('game')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
