"""Activity logger sample tables.

Contacts plus the three activity kinds a field agent logs against them
(tasks, phone calls and appointments). Activity notes are stored in the
backend `description` attribute and exposed as `details`; the regarding
lookup always points at a contact.
"""

from __future__ import annotations

from datetime import datetime

from src.crm_bridge.mapping.mapper import FieldMapEntityMapper, FieldMapping
from src.crm_bridge.mapping.schemas import TableData


class ContactDto(TableData):
    first_name: str | None = None
    last_name: str | None = None
    job_title: str | None = None
    email: str | None = None
    phone: str | None = None
    mobile_phone: str | None = None


class ActivityDto(TableData):
    subject: str | None = None
    details: str | None = None
    activity_type_code: str | None = None
    regarding_id: str | None = None
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None


class PhoneCallDto(ActivityDto):
    phone_number: str | None = None


class AppointmentDto(ActivityDto):
    location: str | None = None


CONTACT_FIELDS: dict[str, FieldMapping | str] = {
    "first_name": "firstname",
    "last_name": "lastname",
    "job_title": "jobtitle",
    "email": "emailaddress1",
    "phone": "telephone1",
    "mobile_phone": "mobilephone",
}

ACTIVITY_FIELDS: dict[str, FieldMapping | str] = {
    "subject": "subject",
    "details": "description",
    # Set by the store from the entity type
    "activity_type_code": FieldMapping(attribute="activitytypecode", read_only=True),
    "regarding_id": FieldMapping(attribute="regardingobjectid", type="lookup", target="contact"),
    "scheduled_start": FieldMapping(attribute="scheduledstart", type="datetime"),
    "scheduled_end": FieldMapping(attribute="scheduledend", type="datetime"),
}


def contact_mapper() -> FieldMapEntityMapper[ContactDto]:
    return FieldMapEntityMapper(ContactDto, "contact", CONTACT_FIELDS)


def task_mapper() -> FieldMapEntityMapper[ActivityDto]:
    return FieldMapEntityMapper(ActivityDto, "task", ACTIVITY_FIELDS, primary_id_attribute="activityid")


def phone_call_mapper() -> FieldMapEntityMapper[PhoneCallDto]:
    return FieldMapEntityMapper(
        PhoneCallDto,
        "phonecall",
        {**ACTIVITY_FIELDS, "phone_number": "phonenumber"},
        primary_id_attribute="activityid",
    )


def appointment_mapper() -> FieldMapEntityMapper[AppointmentDto]:
    return FieldMapEntityMapper(
        AppointmentDto,
        "appointment",
        {**ACTIVITY_FIELDS, "location": "location"},
        primary_id_attribute="activityid",
    )


# Table name (URL segment) -> mapper factory
TABLES = {
    "contacts": contact_mapper,
    "tasks": task_mapper,
    "phonecalls": phone_call_mapper,
    "appointments": appointment_mapper,
}

