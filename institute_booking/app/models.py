# models.py
import uuid
from enum import Enum

from sqlalchemy import (Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text,
                        UniqueConstraint)
from sqlalchemy.orm import declarative_base, relationship

from .clock import from_db, to_db, utcnow

Base = declarative_base()


def new_id():
    return uuid.uuid4().hex


def db_now():
    return to_db(utcnow())


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


# Statuses that never occupy a practitioner's time
NON_BLOCKING_STATUSES = (AppointmentStatus.CANCELLED.value, AppointmentStatus.REJECTED.value)


class StaffMember(Base):
    __tablename__ = 'staff_members'
    id = Column(String(32), primary_key=True, default=new_id)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)

    service_links = relationship("ServiceStaffLink", back_populates="staff_member")
    availability_rules = relationship("AvailabilityRule", back_populates="staff_member")

    @property
    def display_name(self):
        return f"{self.first_name} {self.last_name}".strip()


class Service(Base):
    __tablename__ = 'services'
    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String, nullable=False, unique=True)
    duration_min = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    staff_links = relationship("ServiceStaffLink", back_populates="service")


class ServiceStaffLink(Base):
    __tablename__ = 'service_staff'
    id = Column(String(32), primary_key=True, default=new_id)
    service_id = Column(String(32), ForeignKey('services.id', ondelete='CASCADE'), nullable=False)
    staff_member_id = Column(String(32), ForeignKey('staff_members.id', ondelete='CASCADE'), nullable=False)
    price_cents_override = Column(Integer, nullable=True)
    discount_percent_override = Column(Integer, nullable=True)

    service = relationship("Service", back_populates="staff_links")
    staff_member = relationship("StaffMember", back_populates="service_links")

    __table_args__ = (
        UniqueConstraint('service_id', 'staff_member_id', name='_service_staff_uc'),
        CheckConstraint('price_cents_override IS NULL OR discount_percent_override IS NULL',
                        name='_service_staff_single_override_ck'),
        Index('idx_service_staff_staff', 'staff_member_id'),
    )


class AvailabilityRule(Base):
    __tablename__ = 'availability_rules'
    id = Column(String(32), primary_key=True, default=new_id)
    staff_member_id = Column(String(32), ForeignKey('staff_members.id', ondelete='CASCADE'), nullable=False)
    weekday = Column(Integer, nullable=False)  # 0 = Sunday
    start_time = Column(String(5), nullable=False)  # HH:MM, institute civil time
    end_time = Column(String(5), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    effective_from = Column(Date, nullable=True)
    effective_to = Column(Date, nullable=True)

    staff_member = relationship("StaffMember", back_populates="availability_rules")

    __table_args__ = (
        Index('idx_availability_staff_weekday', 'staff_member_id', 'weekday'),
    )


class InstituteAvailabilityRule(Base):
    __tablename__ = 'institute_availability_rules'
    id = Column(String(32), primary_key=True, default=new_id)
    weekday = Column(Integer, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    effective_from = Column(Date, nullable=True)
    effective_to = Column(Date, nullable=True)

    __table_args__ = (
        Index('idx_institute_availability_weekday', 'weekday'),
    )


class TimeOff(Base):
    __tablename__ = 'time_off'
    id = Column(String(32), primary_key=True, default=new_id)
    staff_member_id = Column(String(32), ForeignKey('staff_members.id', ondelete='CASCADE'), nullable=False)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    is_all_day = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_time_off_staff_start', 'staff_member_id', 'starts_at'),
    )


class Client(Base):
    __tablename__ = 'clients'
    id = Column(String(32), primary_key=True, default=new_id)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)
    phone = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False, default=db_now)

    appointments = relationship("Appointment", back_populates="client")

    @property
    def display_name(self):
        return f"{self.first_name} {self.last_name}".strip()


class Appointment(Base):
    __tablename__ = 'appointments'
    id = Column(String(32), primary_key=True, default=new_id)
    client_id = Column(String(32), ForeignKey('clients.id'), nullable=False)
    staff_member_id = Column(String(32), ForeignKey('staff_members.id'), nullable=False)
    starts_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default=AppointmentStatus.PENDING.value)
    notes = Column(Text, nullable=True)
    total_price_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=db_now)

    confirmed_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejected_reason = Column(Text, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    # Notification reservations: NULL until a sender claims the kind
    confirmation_email_sent_at = Column(DateTime, nullable=True)
    rejected_email_sent_at = Column(DateTime, nullable=True)
    reminder_24h_email_sent_at = Column(DateTime, nullable=True)
    confirmation_sms_sent_at = Column(DateTime, nullable=True)
    reminder_24h_sms_sent_at = Column(DateTime, nullable=True)
    reminder_2h_sms_sent_at = Column(DateTime, nullable=True)

    client = relationship("Client", back_populates="appointments")
    staff_member = relationship("StaffMember")
    items = relationship("AppointmentItem", back_populates="appointment", order_by="AppointmentItem.order",
                         cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_appointment_staff_start', 'staff_member_id', 'starts_at'),
        Index('idx_appointment_client_start', 'client_id', 'starts_at'),
    )

    @property
    def start(self):
        return from_db(self.starts_at)

    @property
    def end(self):
        return from_db(self.ends_at)

    @property
    def duration_min(self):
        return sum(item.duration_min for item in self.items)


class AppointmentItem(Base):
    __tablename__ = 'appointment_items'
    id = Column(String(32), primary_key=True, default=new_id)
    appointment_id = Column(String(32), ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False)
    service_id = Column(String(32), ForeignKey('services.id'), nullable=False)
    order = Column(Integer, nullable=False)
    duration_min = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)  # snapshot of the effective price at booking time

    appointment = relationship("Appointment", back_populates="items")
    service = relationship("Service")


class NotificationLog(Base):
    __tablename__ = 'notification_logs'
    id = Column(String(32), primary_key=True, default=new_id)
    appointment_id = Column(String(32), ForeignKey('appointments.id', ondelete='SET NULL'), nullable=True)
    client_id = Column(String(32), ForeignKey('clients.id', ondelete='SET NULL'), nullable=True)
    kind = Column(String, nullable=False)
    channel = Column(String, nullable=False)
    recipient = Column(String, nullable=False)
    status = Column(String, nullable=False)  # SENT or FAILED
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=db_now)

    __table_args__ = (
        Index('idx_notification_log_appointment', 'appointment_id'),
    )
