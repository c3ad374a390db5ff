"""Create user and category tables with parent/sort_order hierarchy columns

Revision ID: c3f19a2b7d41
Revises:
Create Date: 2026-10-17

sort_order is dense (0..k-1) within each parent group. The database does not
enforce that; the admin console's reorder batches keep it so.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'c3f19a2b7d41'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('user',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        sa.Column('email', sa.String(length=120), nullable=False, unique=True),
        sa.Column('password_hash', sa.Text(), nullable=False),
        sa.Column('full_name', sa.String(length=100), nullable=True),
        sa.Column('role', sa.String(length=20), nullable=False),
        sa.Column('registration_date', sa.DateTime(), nullable=True),
    )

    op.create_table('category',
        sa.Column('id', sa.String(length=36), nullable=False, primary_key=True),
        sa.Column('name', sa.String(length=100), nullable=False, unique=True),
        sa.Column('slug', sa.String(length=120), nullable=False, unique=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('published', sa.Boolean(), nullable=False, server_default=sa.false()),
        # Position within the parent's sibling group
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        # Self-reference; NULL means a root category
        sa.Column('parent_id', sa.String(length=36), sa.ForeignKey('category.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_category_parent_id', 'category', ['parent_id'])


def downgrade():
    op.drop_index('ix_category_parent_id', table_name='category')
    op.drop_table('category')
    op.drop_table('user')
