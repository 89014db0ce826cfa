from __future__ import annotations

import enum


class EventSource(enum.StrEnum):
    crm = "crm"
    telephony = "telephony"
    messaging = "messaging"
    broadcast = "broadcast"


class EventStatus(enum.StrEnum):
    pending = "pending"
    processing = "processing"
    done = "done"
    error = "error"
    skipped = "skipped"


class EntityType(enum.StrEnum):
    contact = "contact"
    call = "call"
    call_summary = "call_summary"
    transcription = "transcription"
    recording = "recording"
    voicemail = "voicemail"
    communication = "communication"
    appointment = "appointment"
    tag = "tag"
    opportunity = "opportunity"
    message = "message"
    conversation = "conversation"
    optout = "optout"
    broadcast = "broadcast"
    unknown = "unknown"


class MessageDirection(enum.StrEnum):
    inbound = "inbound"
    outbound = "outbound"


class SyncDirection(enum.StrEnum):
    crm_to_telephony = "crm_to_telephony"
    telephony_to_crm = "telephony_to_crm"
    messaging_to_crm = "messaging_to_crm"
    crm_to_messaging = "crm_to_messaging"
    broadcast_to_crm = "broadcast_to_crm"
    bidirectional = "bidirectional"


class SyncStatus(enum.StrEnum):
    success = "success"
    error = "error"
    skipped = "skipped"


class OptoutStatus(enum.StrEnum):
    opted_out = "opted_out"
    opted_in = "opted_in"


class JobStatus(enum.StrEnum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


class JobType(enum.StrEnum):
    process_event = "process_event"
    sweep_pending = "sweep_pending"
    alert_check = "alert_check"
    reconcile_contacts = "reconcile_contacts"
