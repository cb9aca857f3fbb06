"""Normalize legacy stage status spellings

Revision ID: 002_normalize_status
Revises: 001_initial_chat
Create Date: 2026-10-18

Rows imported from earlier deployments carry camelCase, "pending"
or empty statuses. Rewrites them to the closed set:
not_started, in_progress, waiting_for_approval, completed, error.
Legacy "agent" message roles become "assistant".
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002_normalize_status'
down_revision = '001_initial_chat'
branch_labels = None
depends_on = None


LEGACY_STATUS_MAP = {
    '': 'not_started',
    'pending': 'not_started',
    'inProgress': 'in_progress',
    'waitingForApproval': 'waiting_for_approval',
    'complete': 'completed',
}

# Reverse mapping used on downgrade; "" and "pending" both come back as "pending"
CANONICAL_TO_LEGACY = {
    'not_started': 'pending',
    'in_progress': 'inProgress',
    'waiting_for_approval': 'waitingForApproval',
    'completed': 'complete',
}


def upgrade() -> None:
    stages = sa.table('pipeline_stages', sa.column('status', sa.String))
    messages = sa.table('messages', sa.column('role', sa.String))

    for legacy, canonical in LEGACY_STATUS_MAP.items():
        op.execute(
            stages.update()
            .where(stages.c.status == legacy)
            .values(status=canonical)
        )

    op.execute(
        messages.update()
        .where(messages.c.role == 'agent')
        .values(role='assistant')
    )


def downgrade() -> None:
    stages = sa.table('pipeline_stages', sa.column('status', sa.String))
    messages = sa.table('messages', sa.column('role', sa.String))

    for canonical, legacy in CANONICAL_TO_LEGACY.items():
        op.execute(
            stages.update()
            .where(stages.c.status == canonical)
            .values(status=legacy)
        )

    op.execute(
        messages.update()
        .where(messages.c.role == 'assistant')
        .values(role='agent')
    )
