"""
Initial workflow schema: users, themes, documents, meeting reports,
plagiarism checks, jury decisions, archives, supervisor assignments and
notifications

Revision ID: 4b7e2a9c1d30
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '4b7e2a9c1d30'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    op.create_table(
        'Department',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(20), nullable=False, unique=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
    )
    op.create_table(
        'User',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.Text(), nullable=False),
        sa.Column('password', sa.Text(), nullable=False),
        sa.Column('first_name', sa.Text(), nullable=True),
        sa.Column('last_name', sa.Text(), nullable=True),
        sa.Column('email', sa.String(120), nullable=True),
        sa.Column('role', sa.Text(), nullable=False, server_default='student'),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('Department.id'), nullable=True),
        sa.Column('student_number', sa.String(40), nullable=True),
        sa.UniqueConstraint('email', name='uq_user_email'),
    )
    op.create_table(
        'theme',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=False, index=True),
        sa.Column('supervisor_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=True, index=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('objectives', sa.Text(), nullable=True),
        sa.Column('methodology', sa.Text(), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('revision_notes', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reviewed_by', sa.Integer(), sa.ForeignKey('User.id'), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('previous_version_id', sa.String(36), sa.ForeignKey('theme.id'), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        'uq_open_theme_per_student', 'theme', ['student_id'], unique=True,
        sqlite_where=sa.text("status != 'rejected'"),
        postgresql_where=sa.text("status != 'rejected'"),
    )
    op.create_table(
        'document_version_counter',
        sa.Column('theme_id', sa.String(36), sa.ForeignKey('theme.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('document_type', sa.String(32), primary_key=True),
        sa.Column('last_version', sa.Integer(), nullable=False),
    )
    op.create_table(
        'document',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('theme_id', sa.String(36), sa.ForeignKey('theme.id'), nullable=False, index=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=False, index=True),
        sa.Column('document_type', sa.String(32), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('file_reference', sa.Text(), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=True),
        sa.Column('mime_type', sa.String(120), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('feedback', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reviewed_by', sa.Integer(), sa.ForeignKey('User.id'), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('theme_id', 'document_type', 'version', name='uq_document_version'),
    )
    op.create_table(
        'meeting_report',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('theme_id', sa.String(36), sa.ForeignKey('theme.id'), nullable=False, index=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=False, index=True),
        sa.Column('supervisor_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('User.id'), nullable=False),
        sa.Column('meeting_date', sa.Date(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('next_steps', sa.Text(), nullable=True),
        sa.Column('overall_progress', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('supervisor_validated', sa.Boolean(), nullable=False),
        sa.Column('supervisor_validated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('department_head_validated', sa.Boolean(), nullable=False),
        sa.Column('department_head_validated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('department_head_comments', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('validated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('validated_by', sa.Integer(), sa.ForeignKey('User.id'), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        'meeting_report_note',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('report_id', sa.String(36), sa.ForeignKey('meeting_report.id'), nullable=False, index=True),
        sa.Column('author_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        'plagiarism_check',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('document_id', sa.String(36), sa.ForeignKey('document.id'), nullable=False, index=True),
        sa.Column('theme_id', sa.String(36), sa.ForeignKey('theme.id'), nullable=False),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('threshold_used', sa.Float(), nullable=False),
        sa.Column('plagiarism_score', sa.Float(), nullable=True),
        sa.Column('sources_found', sa.Integer(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('passed', sa.Boolean(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('requested_by', sa.Integer(), sa.ForeignKey('User.id'), nullable=True),
        sa.Column('checked_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        'uq_open_plagiarism_check', 'plagiarism_check', ['document_id'], unique=True,
        sqlite_where=sa.text("status IN ('pending', 'in_progress')"),
        postgresql_where=sa.text("status IN ('pending', 'in_progress')"),
    )
    op.create_table(
        'jury_decision',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('theme_id', sa.String(36), sa.ForeignKey('theme.id'), nullable=False, unique=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=False),
        sa.Column('defense_date', sa.Date(), nullable=True),
        sa.Column('decision', sa.String(32), nullable=False),
        sa.Column('grade', sa.Float(), nullable=True),
        sa.Column('mention', sa.String(60), nullable=True),
        sa.Column('corrections_required', sa.Boolean(), nullable=False),
        sa.Column('corrections_deadline', sa.Date(), nullable=True),
        sa.Column('corrections_description', sa.Text(), nullable=True),
        sa.Column('corrections_completed', sa.Boolean(), nullable=False),
        sa.Column('corrections_validated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('corrections_validated_by', sa.Integer(), sa.ForeignKey('User.id'), nullable=True),
        sa.Column('deliberation_notes', sa.Text(), nullable=True),
        sa.Column('decided_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('decided_by', sa.Integer(), sa.ForeignKey('User.id'), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        'archive',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('theme_id', sa.String(36), sa.ForeignKey('theme.id'), nullable=False, unique=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=False, index=True),
        sa.Column('document_id', sa.String(36), sa.ForeignKey('document.id'), nullable=False),
        sa.Column('final_document_path', sa.Text(), nullable=False),
        sa.Column('pdf_a_path', sa.Text(), nullable=True),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        sa.Column('checksum', sa.String(64), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('access_level', sa.String(32), nullable=False),
        sa.Column('published', sa.Boolean(), nullable=False),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_by', sa.Integer(), sa.ForeignKey('User.id'), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        'supervisor_assignment',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=False),
        sa.Column('supervisor_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('assigned_by', sa.Integer(), sa.ForeignKey('User.id'), nullable=False),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
    )
    # Une seule attribution active par étudiant
    op.create_index(
        'uq_active_supervisor_assignment', 'supervisor_assignment', ['student_id'], unique=True,
        sqlite_where=sa.text('is_active = 1'),
        postgresql_where=sa.text('is_active'),
    )
    op.create_table(
        'notification',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('User.id'), nullable=False, index=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('severity', sa.String(32), nullable=False),
        sa.Column('related_entity_type', sa.String(40), nullable=True),
        sa.Column('related_entity_id', sa.String(36), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=False),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        'system_setting',
        sa.Column('key', sa.String(80), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_by', sa.Integer(), sa.ForeignKey('User.id'), nullable=True),
    )
    op.create_table(
        'activity_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('User.id', name='fk_activity_log_user_id'), nullable=True),
        sa.Column('action', sa.String(60), nullable=False),
        sa.Column('entity_type', sa.String(40), nullable=False),
        sa.Column('entity_id', sa.String(36), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
    )


def downgrade():
    op.drop_table('activity_log')
    op.drop_table('system_setting')
    op.drop_table('notification')
    op.drop_index('uq_active_supervisor_assignment', table_name='supervisor_assignment')
    op.drop_table('supervisor_assignment')
    op.drop_table('archive')
    op.drop_table('jury_decision')
    op.drop_index('uq_open_plagiarism_check', table_name='plagiarism_check')
    op.drop_table('plagiarism_check')
    op.drop_table('meeting_report_note')
    op.drop_table('meeting_report')
    op.drop_table('document')
    op.drop_table('document_version_counter')
    op.drop_index('uq_open_theme_per_student', table_name='theme')
    op.drop_table('theme')
    op.drop_table('User')
    op.drop_table('Department')
