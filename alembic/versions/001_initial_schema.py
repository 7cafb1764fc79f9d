"""Initial schema with plans, plan nodes, collaborators and decision requests.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    # Users and organizations anchor ownership, collaboration and assignment
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255)),
        sa.Column('user_type', sa.Enum('human', 'agent', name='usertype'), nullable=False, server_default='human'),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_user_type', 'users', ['user_type'])

    op.create_table(
        'organizations',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_organizations_slug', 'organizations', ['slug'], unique=True)

    op.create_table(
        'organization_members',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('organization_id', sa.Uuid, sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', sa.Enum('owner', 'admin', 'member', name='memberrole'), nullable=False, server_default='member'),
        sa.Column('joined_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('organization_id', 'user_id', name='unique_org_user'),
    )
    op.create_index('ix_organization_members_organization_id', 'organization_members', ['organization_id'])
    op.create_index('ix_organization_members_user_id', 'organization_members', ['user_id'])

    # Plans
    op.create_table(
        'plans',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('title', sa.Text, nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('owner_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.Enum('draft', 'active', 'completed', 'archived', name='planstatus'), nullable=False, server_default='draft'),
        sa.Column('visibility', sa.Enum('private', 'public', 'unlisted', name='planvisibility'), nullable=False, server_default='private'),
        sa.Column('organization_id', sa.Uuid, sa.ForeignKey('organizations.id', ondelete='SET NULL')),
        sa.Column('metadata', JSONType),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_plans_owner_id', 'plans', ['owner_id'])
    op.create_index('ix_plans_status', 'plans', ['status'])
    op.create_index('ix_plans_visibility', 'plans', ['visibility'])
    op.create_index('ix_plans_organization_id', 'plans', ['organization_id'])
    op.create_index('ix_plans_created_at', 'plans', ['created_at'])

    # Plan nodes: deleting a node cascades to its subtree through parent_id
    op.create_table(
        'plan_nodes',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('plan_id', sa.Uuid, sa.ForeignKey('plans.id', ondelete='CASCADE'), nullable=False),
        sa.Column('parent_id', sa.Uuid, sa.ForeignKey('plan_nodes.id', ondelete='CASCADE')),
        sa.Column('node_type', sa.Enum('root', 'phase', 'task', 'milestone', name='nodetype'), nullable=False),
        sa.Column('title', sa.Text, nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('status', sa.Enum('not_started', 'in_progress', 'completed', 'blocked', name='nodestatus'), nullable=False, server_default='not_started'),
        sa.Column('order_index', sa.Integer, nullable=False, server_default='0'),
        sa.Column('due_date', sa.DateTime),
        sa.Column('context', sa.Text),
        sa.Column('agent_instructions', sa.Text),
        sa.Column('metadata', JSONType),
        sa.Column('agent_requested', sa.Enum('start', 'review', 'help', 'continue', name='agentrequesttype')),
        sa.Column('agent_requested_at', sa.DateTime),
        sa.Column('agent_requested_by', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('agent_request_message', sa.Text),
        sa.Column('assigned_agent_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('assigned_agent_at', sa.DateTime),
        sa.Column('assigned_agent_by', sa.Uuid, sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('order_index >= 0', name='non_negative_order_index'),
        sa.CheckConstraint("(node_type = 'root') = (parent_id IS NULL)", name='root_has_no_parent'),
        sa.UniqueConstraint('plan_id', 'parent_id', 'title', 'node_type', name='plan_nodes_unique_title_per_parent'),
    )
    op.create_index('ix_plan_nodes_plan_id', 'plan_nodes', ['plan_id'])
    op.create_index('ix_plan_nodes_parent_id', 'plan_nodes', ['parent_id'])
    op.create_index('ix_plan_nodes_node_type', 'plan_nodes', ['node_type'])
    op.create_index('ix_plan_nodes_status', 'plan_nodes', ['status'])
    op.create_index('ix_plan_nodes_assigned_agent_id', 'plan_nodes', ['assigned_agent_id'])
    op.create_index('idx_plan_nodes_plan_parent_order', 'plan_nodes', ['plan_id', 'parent_id', 'order_index'])

    # Collaborators
    op.create_table(
        'plan_collaborators',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('plan_id', sa.Uuid, sa.ForeignKey('plans.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', sa.Enum('viewer', 'editor', 'admin', name='collaboratorrole'), nullable=False, server_default='viewer'),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('plan_id', 'user_id', name='unique_plan_collaborator'),
    )
    op.create_index('ix_plan_collaborators_plan_id', 'plan_collaborators', ['plan_id'])
    op.create_index('ix_plan_collaborators_user_id', 'plan_collaborators', ['user_id'])

    # Decision requests
    op.create_table(
        'decision_requests',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('plan_id', sa.Uuid, sa.ForeignKey('plans.id', ondelete='CASCADE'), nullable=False),
        sa.Column('node_id', sa.Uuid, sa.ForeignKey('plan_nodes.id', ondelete='SET NULL')),
        sa.Column('requested_by_user_id', sa.Uuid, sa.ForeignKey('users.id'), nullable=False),
        sa.Column('requested_by_agent_name', sa.String(100)),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('context', sa.Text, nullable=False),
        sa.Column('options', JSONType),
        sa.Column('urgency', sa.Enum('blocking', 'can_continue', 'informational', name='decisionurgency'), nullable=False, server_default='can_continue'),
        sa.Column('status', sa.Enum('pending', 'decided', 'expired', 'cancelled', name='decisionstatus'), nullable=False, server_default='pending'),
        sa.Column('expires_at', sa.DateTime),
        sa.Column('decided_by_user_id', sa.Uuid, sa.ForeignKey('users.id')),
        sa.Column('decision', sa.Text),
        sa.Column('rationale', sa.Text),
        sa.Column('decided_at', sa.DateTime),
        sa.Column('metadata', JSONType),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_decision_requests_plan_id', 'decision_requests', ['plan_id'])
    op.create_index('ix_decision_requests_node_id', 'decision_requests', ['node_id'])
    op.create_index('ix_decision_requests_urgency', 'decision_requests', ['urgency'])
    op.create_index('ix_decision_requests_status', 'decision_requests', ['status'])
    op.create_index('ix_decision_requests_created_at', 'decision_requests', ['created_at'])


def downgrade() -> None:
    op.drop_table('decision_requests')
    op.drop_table('plan_collaborators')
    op.drop_table('plan_nodes')
    op.drop_table('plans')
    op.drop_table('organization_members')
    op.drop_table('organizations')
    op.drop_table('users')

    bind = op.get_bind()
    if bind.dialect.name == 'postgresql':
        for enum_name in (
            'decisionstatus',
            'decisionurgency',
            'collaboratorrole',
            'agentrequesttype',
            'nodestatus',
            'nodetype',
            'planvisibility',
            'planstatus',
            'memberrole',
            'usertype',
        ):
            op.execute(f'DROP TYPE IF EXISTS {enum_name}')
