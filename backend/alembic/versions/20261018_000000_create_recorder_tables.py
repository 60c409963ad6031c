"""Create recorder tables.

Creates the recording, step, playback, generated test and recording log
tables used by the recorder service.

Revision ID: create_recorder_tables
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers
revision = 'create_recorder_tables'
down_revision = None
branch_labels = None
depends_on = None


def table_exists(table_name: str) -> bool:
    """Check if a table exists in the database."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    if not table_exists('recording_sessions'):
        op.create_table(
            'recording_sessions',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('session_id', sa.String(36), nullable=True),  # Live browser session
            sa.Column('project_id', sa.String(100), nullable=False, index=True),
            sa.Column('target_id', sa.String(100), nullable=True),
            sa.Column('name', sa.String(255), nullable=False),
            sa.Column('description', sa.Text, nullable=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
            sa.Column('auto_generate_steps', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('real_time_preview', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('start_url', sa.String(2048), nullable=True),
            sa.Column('current_url', sa.String(2048), nullable=True),
            sa.Column('steps_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('duration_seconds', sa.Float, nullable=False, server_default='0'),
            sa.Column('error_message', sa.Text, nullable=True),
            sa.Column('created_by', sa.String(100), nullable=True),
            sa.Column('created_at', sa.DateTime, nullable=True),
            sa.Column('updated_at', sa.DateTime, nullable=True),
            sa.Column('completed_at', sa.DateTime, nullable=True),
        )

    if not table_exists('test_steps'):
        op.create_table(
            'test_steps',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('recording_id', sa.String(36), sa.ForeignKey('recording_sessions.id'), nullable=False, index=True),
            sa.Column('order_index', sa.Integer, nullable=False),
            sa.Column('natural_language', sa.Text, nullable=False),
            sa.Column('action_type', sa.String(20), nullable=False),  # click | type | verify | navigate | wait | select | scroll | hover
            sa.Column('element_description', sa.String(512), nullable=True),
            sa.Column('element_selector', sa.String(1024), nullable=True),
            sa.Column('element_alternatives', sa.JSON, nullable=False),
            sa.Column('value', sa.Text, nullable=True),
            sa.Column('page_url', sa.String(2048), nullable=True),
            sa.Column('confidence_score', sa.Float, nullable=False, server_default='0'),
            sa.Column('quality_score', sa.Float, nullable=True),
            sa.Column('user_verified', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('needs_review', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('screenshot_before', sa.String(512), nullable=True),
            sa.Column('screenshot_after', sa.String(512), nullable=True),
            sa.Column('ai_metadata', sa.JSON, nullable=True),
            sa.Column('created_at', sa.DateTime, nullable=True),
            sa.Column('updated_at', sa.DateTime, nullable=True),
        )

    if not table_exists('playback_sessions'):
        op.create_table(
            'playback_sessions',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('recording_id', sa.String(36), sa.ForeignKey('recording_sessions.id'), nullable=False, index=True),
            sa.Column('browser_session_id', sa.String(36), nullable=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='idle'),
            sa.Column('current_step_index', sa.Integer, nullable=False, server_default='0'),
            sa.Column('total_steps', sa.Integer, nullable=False, server_default='0'),
            sa.Column('speed', sa.Float, nullable=False, server_default='1'),
            sa.Column('step_delay_ms', sa.Integer, nullable=False, server_default='0'),
            sa.Column('capture_screenshots', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('stop_on_error', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('passed_steps', sa.Integer, nullable=False, server_default='0'),
            sa.Column('failed_steps', sa.Integer, nullable=False, server_default='0'),
            sa.Column('skipped_steps', sa.Integer, nullable=False, server_default='0'),
            sa.Column('error_message', sa.Text, nullable=True),
            sa.Column('created_at', sa.DateTime, nullable=True),
            sa.Column('started_at', sa.DateTime, nullable=True),
            sa.Column('completed_at', sa.DateTime, nullable=True),
        )

    if not table_exists('playback_step_results'):
        op.create_table(
            'playback_step_results',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('playback_id', sa.String(36), sa.ForeignKey('playback_sessions.id'), nullable=False, index=True),
            sa.Column('step_id', sa.String(36), nullable=True),
            sa.Column('order_index', sa.Integer, nullable=False),
            sa.Column('action_type', sa.String(20), nullable=False),
            sa.Column('status', sa.String(20), nullable=False),  # passed | failed | skipped
            sa.Column('selector_used', sa.String(1024), nullable=True),
            sa.Column('healed', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('heal_attempts', sa.JSON, nullable=True),
            sa.Column('duration_ms', sa.Integer, nullable=False, server_default='0'),
            sa.Column('screenshot_path', sa.String(512), nullable=True),
            sa.Column('error_message', sa.Text, nullable=True),
            sa.Column('created_at', sa.DateTime, nullable=True),
        )

    if not table_exists('generated_tests'):
        op.create_table(
            'generated_tests',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('recording_id', sa.String(36), sa.ForeignKey('recording_sessions.id'), nullable=False, index=True),
            sa.Column('options_hash', sa.String(64), nullable=False),
            sa.Column('steps_digest', sa.String(64), nullable=False),
            sa.Column('language', sa.String(20), nullable=False),
            sa.Column('framework', sa.String(30), nullable=False),
            sa.Column('test_name', sa.String(255), nullable=False),
            sa.Column('test_code', sa.Text, nullable=False),
            sa.Column('imports', sa.JSON, nullable=False),
            sa.Column('include_comments', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('include_screenshots', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime, nullable=True),
            sa.UniqueConstraint('recording_id', 'options_hash', 'steps_digest', name='uq_generated_tests_cache'),
        )

    if not table_exists('recording_logs'):
        op.create_table(
            'recording_logs',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('recording_id', sa.String(36), sa.ForeignKey('recording_sessions.id'), nullable=False, index=True),
            sa.Column('level', sa.String(10), nullable=False),
            sa.Column('message', sa.Text, nullable=False),
            sa.Column('source', sa.String(100), nullable=True),
            sa.Column('created_at', sa.DateTime, nullable=True),
        )


def downgrade() -> None:
    for table_name in (
        'recording_logs',
        'generated_tests',
        'playback_step_results',
        'playback_sessions',
        'test_steps',
        'recording_sessions',
    ):
        if table_exists(table_name):
            op.drop_table(table_name)
