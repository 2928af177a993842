"""search and listing indexes (postgres)

Revision ID: 000002_search_indexes
Revises: 000001_initial
Create Date: 2026-10-18 00:00:02

"""
from alembic import op
import sqlalchemy as sa


revision = '000002_search_indexes'
down_revision = '000001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != 'postgresql':
        return
    # Same expression the listing query searches with, so the planner can use it
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_policies_search ON policies USING GIN ("
        "(setweight(to_tsvector('english', coalesce(title, '')), 'A') || "
        "setweight(to_tsvector('english', coalesce(content, '')), 'B')))"
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_policies_org_review ON policies (organization_id, review_date)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_policy_tags_tag ON policy_tags (tag)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_policy_assignments_org_user ON policy_assignments (organization_id, user_id)")


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != 'postgresql':
        return
    for name in ['ix_policies_search', 'ix_policies_org_review', 'ix_policy_tags_tag', 'ix_policy_assignments_org_user']:
        op.execute(f"DROP INDEX IF EXISTS {name}")
