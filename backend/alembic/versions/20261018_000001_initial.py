"""initial

Revision ID: 000001_initial
Revises: 
Create Date: 2026-10-18 00:00:01

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '000001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.String(), nullable=False),
    )
    op.create_table(
        'users',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('organization_id', sa.String(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False),
        sa.Column('email', sa.String()),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('created_at', sa.String(), nullable=False),
    )
    op.create_table(
        'policies',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('organization_id', sa.String(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('content', sa.Text()),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('department', sa.String()),
        sa.Column('category', sa.String()),
        sa.Column('effective_date', sa.String()),
        sa.Column('review_date', sa.String()),
        sa.Column('expiration_date', sa.String()),
        sa.Column('author_id', sa.String(), nullable=False),
        sa.Column('reviewed_by', sa.String()),
        sa.Column('created_at', sa.String(), nullable=False),
        sa.Column('updated_at', sa.String(), nullable=False),
    )
    op.create_index('ix_policies_organization_id', 'policies', ['organization_id'])
    op.create_index('ix_policies_created_at', 'policies', ['created_at'])
    op.create_table(
        'policy_tags',
        sa.Column('policy_id', sa.Integer(), sa.ForeignKey('policies.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('tag', sa.String(), primary_key=True),
    )
    op.create_table(
        'portals',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('organization_id', sa.String(), sa.ForeignKey('organizations.id'), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('access_type', sa.String(), nullable=False),
        sa.Column('password_hash', sa.String()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('requires_acknowledgment', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.String(), nullable=False),
        sa.UniqueConstraint('organization_id', 'slug', name='uq_portals_org_slug'),
    )
    op.create_table(
        'policy_portal_assignments',
        sa.Column('policy_id', sa.Integer(), sa.ForeignKey('policies.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('portal_id', sa.Integer(), sa.ForeignKey('portals.id', ondelete='CASCADE'), primary_key=True),
    )
    op.create_index('ix_policy_portal_assignments_portal_id', 'policy_portal_assignments', ['portal_id'])
    op.create_table(
        'policy_assignments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('policy_id', sa.Integer(), sa.ForeignKey('policies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('organization_id', sa.String(), nullable=False),
        sa.Column('due_date', sa.String()),
        sa.Column('created_at', sa.String(), nullable=False),
        sa.UniqueConstraint('policy_id', 'user_id', name='uq_policy_assignments_policy_user'),
    )
    op.create_index('ix_policy_assignments_policy_id', 'policy_assignments', ['policy_id'])
    op.create_table(
        'policy_acknowledgments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('policy_id', sa.Integer(), sa.ForeignKey('policies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('acknowledged_at', sa.String(), nullable=False),
    )
    op.create_index('ix_policy_acknowledgments_policy_id', 'policy_acknowledgments', ['policy_id'])


def downgrade() -> None:
    op.drop_index('ix_policy_acknowledgments_policy_id', table_name='policy_acknowledgments')
    op.drop_table('policy_acknowledgments')
    op.drop_index('ix_policy_assignments_policy_id', table_name='policy_assignments')
    op.drop_table('policy_assignments')
    op.drop_index('ix_policy_portal_assignments_portal_id', table_name='policy_portal_assignments')
    op.drop_table('policy_portal_assignments')
    op.drop_table('portals')
    op.drop_table('policy_tags')
    op.drop_index('ix_policies_created_at', table_name='policies')
    op.drop_index('ix_policies_organization_id', table_name='policies')
    op.drop_table('policies')
    op.drop_table('users')
    op.drop_table('organizations')
