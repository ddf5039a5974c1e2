"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'staff_members',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('first_name', sa.String(), nullable=False),
        sa.Column('last_name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True, unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
    )
    op.create_table(
        'services',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('name', sa.String(), nullable=False, unique=True),
        sa.Column('duration_min', sa.Integer(), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
    )
    op.create_table(
        'service_staff',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('service_id', sa.String(32), sa.ForeignKey('services.id', ondelete='CASCADE'), nullable=False),
        sa.Column('staff_member_id', sa.String(32), sa.ForeignKey('staff_members.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('price_cents_override', sa.Integer(), nullable=True),
        sa.Column('discount_percent_override', sa.Integer(), nullable=True),
        sa.UniqueConstraint('service_id', 'staff_member_id', name='_service_staff_uc'),
        sa.CheckConstraint('price_cents_override IS NULL OR discount_percent_override IS NULL',
                           name='_service_staff_single_override_ck'),
    )
    op.create_index('idx_service_staff_staff', 'service_staff', ['staff_member_id'])

    op.create_table(
        'availability_rules',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('staff_member_id', sa.String(32), sa.ForeignKey('staff_members.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.String(5), nullable=False),
        sa.Column('end_time', sa.String(5), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=True),
        sa.Column('effective_to', sa.Date(), nullable=True),
    )
    op.create_index('idx_availability_staff_weekday', 'availability_rules', ['staff_member_id', 'weekday'])

    op.create_table(
        'institute_availability_rules',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.String(5), nullable=False),
        sa.Column('end_time', sa.String(5), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=True),
        sa.Column('effective_to', sa.Date(), nullable=True),
    )
    op.create_index('idx_institute_availability_weekday', 'institute_availability_rules', ['weekday'])

    op.create_table(
        'time_off',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('staff_member_id', sa.String(32), sa.ForeignKey('staff_members.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('starts_at', sa.DateTime(), nullable=False),
        sa.Column('ends_at', sa.DateTime(), nullable=False),
        sa.Column('is_all_day', sa.Boolean(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
    )
    op.create_index('idx_time_off_staff_start', 'time_off', ['staff_member_id', 'starts_at'])

    op.create_table(
        'clients',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('first_name', sa.String(), nullable=False),
        sa.Column('last_name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True, unique=True),
        sa.Column('phone', sa.String(), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'appointments',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('client_id', sa.String(32), sa.ForeignKey('clients.id'), nullable=False),
        sa.Column('staff_member_id', sa.String(32), sa.ForeignKey('staff_members.id'), nullable=False),
        sa.Column('starts_at', sa.DateTime(), nullable=False),
        sa.Column('ends_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('total_price_cents', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(), nullable=True),
        sa.Column('rejected_reason', sa.Text(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('confirmation_email_sent_at', sa.DateTime(), nullable=True),
        sa.Column('rejected_email_sent_at', sa.DateTime(), nullable=True),
        sa.Column('reminder_24h_email_sent_at', sa.DateTime(), nullable=True),
        sa.Column('confirmation_sms_sent_at', sa.DateTime(), nullable=True),
        sa.Column('reminder_24h_sms_sent_at', sa.DateTime(), nullable=True),
        sa.Column('reminder_2h_sms_sent_at', sa.DateTime(), nullable=True),
    )
    op.create_index('idx_appointment_staff_start', 'appointments', ['staff_member_id', 'starts_at'])
    op.create_index('idx_appointment_client_start', 'appointments', ['client_id', 'starts_at'])

    op.create_table(
        'appointment_items',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('appointment_id', sa.String(32), sa.ForeignKey('appointments.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('service_id', sa.String(32), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('order', sa.Integer(), nullable=False),
        sa.Column('duration_min', sa.Integer(), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
    )

    op.create_table(
        'notification_logs',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('appointment_id', sa.String(32), sa.ForeignKey('appointments.id', ondelete='SET NULL'),
                  nullable=True),
        sa.Column('client_id', sa.String(32), sa.ForeignKey('clients.id', ondelete='SET NULL'), nullable=True),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('channel', sa.String(), nullable=False),
        sa.Column('recipient', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('idx_notification_log_appointment', 'notification_logs', ['appointment_id'])


def downgrade():
    op.drop_index('idx_notification_log_appointment', table_name='notification_logs')
    op.drop_table('notification_logs')
    op.drop_table('appointment_items')
    op.drop_index('idx_appointment_client_start', table_name='appointments')
    op.drop_index('idx_appointment_staff_start', table_name='appointments')
    op.drop_table('appointments')
    op.drop_table('clients')
    op.drop_index('idx_time_off_staff_start', table_name='time_off')
    op.drop_table('time_off')
    op.drop_index('idx_institute_availability_weekday', table_name='institute_availability_rules')
    op.drop_table('institute_availability_rules')
    op.drop_index('idx_availability_staff_weekday', table_name='availability_rules')
    op.drop_table('availability_rules')
    op.drop_index('idx_service_staff_staff', table_name='service_staff')
    op.drop_table('service_staff')
    op.drop_table('services')
    op.drop_table('staff_members')
