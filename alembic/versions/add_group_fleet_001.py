"""add group fleet tables

Revision ID: add_group_fleet_001
Revises: 
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'add_group_fleet_001'
down_revision = None
branch_labels = None
depends_on = None


def _base_columns():
    return [
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade():
    # Create whatsapp_connections table
    op.create_table(
        'whatsapp_connections',
        *_base_columns(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('number', sa.String(length=50), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='DISCONNECTED'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_whatsapp_connections_id', 'whatsapp_connections', ['id'])
    op.create_index('ix_whatsapp_connections_tenant_id', 'whatsapp_connections', ['tenant_id'])

    # Create group_series table
    op.create_table(
        'group_series',
        *_base_columns(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('base_group_name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),

        # Capacity policy
        sa.Column('max_participants', sa.Integer(), nullable=False, server_default='256'),
        sa.Column('threshold_percentage', sa.Float(), nullable=False, server_default='95'),
        sa.Column('auto_create_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),

        # Rotation pointer
        sa.Column('next_group_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('current_active_group_id', sa.Integer(), nullable=True),

        sa.Column('whatsapp_id', sa.Integer(), nullable=False),
        sa.Column('landing_page_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['whatsapp_id'], ['whatsapp_connections.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_tenant_series_name')
    )
    op.create_index('ix_group_series_id', 'group_series', ['id'])
    op.create_index('ix_group_series_tenant_id', 'group_series', ['tenant_id'])
    op.create_index('ix_group_series_name', 'group_series', ['name'])
    op.create_index('ix_group_series_whatsapp_id', 'group_series', ['whatsapp_id'])

    # Create groups table
    op.create_table(
        'groups',
        *_base_columns(),
        sa.Column('jid', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('participants', sa.JSON(), nullable=True),
        sa.Column('admin_participants', sa.JSON(), nullable=True),
        sa.Column('invite_link', sa.String(length=500), nullable=True),
        sa.Column('whatsapp_id', sa.Integer(), nullable=True),
        sa.Column('user_role', sa.String(length=20), nullable=True),

        # Fleet attributes
        sa.Column('is_managed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('group_series', sa.String(length=255), nullable=True),
        sa.Column('group_number', sa.Integer(), nullable=True),
        sa.Column('base_group_name', sa.String(length=255), nullable=True),
        sa.Column('max_participants', sa.Integer(), nullable=False, server_default='256'),
        sa.Column('threshold_percentage', sa.Float(), nullable=False, server_default='95'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('auto_create_next', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deactivated_at', sa.DateTime(), nullable=True),

        # Sync attributes
        sa.Column('last_sync', sa.DateTime(), nullable=True),
        sa.Column('sync_status', sa.String(length=20), nullable=False, server_default='synced'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'jid', name='uq_tenant_group_jid')
    )
    op.create_index('ix_groups_id', 'groups', ['id'])
    op.create_index('ix_groups_tenant_id', 'groups', ['tenant_id'])
    op.create_index('ix_groups_jid', 'groups', ['jid'])
    op.create_index('ix_groups_whatsapp_id', 'groups', ['whatsapp_id'])
    op.create_index('ix_groups_group_series', 'groups', ['group_series'])


def downgrade():
    op.drop_table('groups')
    op.drop_table('group_series')
    op.drop_table('whatsapp_connections')
