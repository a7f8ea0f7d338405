from enum import Enum

TRIGGER_INBOUND_SMS = "inbound_sms"
TRIGGER_TAG_ADDED = "tag_added"
TRIGGER_INBOUND_WEBHOOK = "inbound_webhook"
TRIGGER_SCHEDULED_TIME = "scheduled_time"
TRIGGER_MISSED_APPOINTMENT = "missed_appointment"


class NodeType(str, Enum):
    trigger = "trigger"
    action = "action"
    delay = "delay"
    condition = "condition"
    note = "note"


class EveryUnit(str, Enum):
    minutes = "minutes"
    days = "days"
    weeks = "weeks"
    months = "months"


class SpecificKind(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class ActionKind(str, Enum):
    send_sms = "send_sms"
    send_email = "send_email"
    add_tag = "add_tag"


class MessageTarget(str, Enum):
    inbound_sender = "inbound_sender"
    event_contact = "event_contact"
    internal_notification = "internal_notification"
    custom = "custom"


class EdgePort(str, Enum):
    out = "out"
    true = "true"
    false = "false"
