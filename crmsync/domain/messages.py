import re

from crmsync.domain.helpers import parse_timestamp
from crmsync.domain.models import Message
from crmsync.errors import ValidationError

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
RECIPIENT_FIELDS = ("toRecipients", "ccRecipients", "bccRecipients")


def is_valid_email(address):
    return bool(address) and EMAIL_RE.match(address.strip()) is not None


def _email_address(entry):
    email = (entry or {}).get("emailAddress") or {}
    return (email.get("name") or "").strip(), (email.get("address") or "").strip()


def _sender(raw):
    name, address = _email_address(raw.get("sender"))
    if not address:
        name, address = _email_address(raw.get("from"))
    return name, address


def _recipient_addresses(raw, field):
    addresses = []
    seen = set()
    for entry in raw.get(field) or []:
        _, address = _email_address(entry)
        key = address.lower()
        if not key or key in seen:
            continue
        seen.add(key)
        addresses.append(key)
    return addresses


def normalize_message(raw, folder_key):
    """Convert a Graph message payload into a Message filed under ``folder_key``."""
    msg_id = ((raw or {}).get("id") or "").strip()
    if not msg_id:
        raise ValidationError("Message record has no id.")
    sender_name, sender_address = _sender(raw)
    flag = raw.get("flag") or {}
    return Message(
        id=msg_id,
        folder_key=folder_key,
        sender_name=sender_name,
        sender_address=sender_address.lower(),
        subject=raw.get("subject") or "",
        preview=raw.get("bodyPreview") or "",
        received_at=raw.get("receivedDateTime") or raw.get("sentDateTime"),
        is_read=bool(raw.get("isRead")),
        is_flagged=flag.get("flagStatus") == "flagged",
        has_attachments=bool(raw.get("hasAttachments")),
        importance=raw.get("importance") or "normal",
        to=_recipient_addresses(raw, "toRecipients"),
        cc=_recipient_addresses(raw, "ccRecipients"),
        bcc=_recipient_addresses(raw, "bccRecipients"),
        raw=dict(raw),
    )


def message_addresses(message):
    """Sender then to/cc/bcc addresses of a Message, lower-cased."""
    addresses = []
    if message.sender_address:
        addresses.append(message.sender_address.lower())
    for bucket in (message.to, message.cc, message.bcc):
        addresses.extend(address.lower() for address in bucket)
    return addresses


def unique_addresses(messages):
    """Unique valid addresses across messages, in first-seen order."""
    ordered = []
    seen = set()
    for message in messages or []:
        for address in message_addresses(message):
            if address in seen or not is_valid_email(address):
                continue
            seen.add(address)
            ordered.append(address)
    return ordered


def _touch(interactions, address, when):
    key = (address or "").strip().lower()
    if not key or when is None:
        return
    current = interactions.get(key)
    if current is None or when > current:
        interactions[key] = when


def latest_interactions(messages, events=None):
    """Map each address to its most recent interaction time across mail and calendar events."""
    interactions = {}
    for message in messages or []:
        when = parse_timestamp(message.received_at)
        for address in message_addresses(message):
            _touch(interactions, address, when)
    for event in events or []:
        when = parse_timestamp(((event or {}).get("start") or {}).get("dateTime"))
        people = list(event.get("attendees") or [])
        if event.get("organizer"):
            people.append(event["organizer"])
        for person in people:
            _, address = _email_address(person)
            _touch(interactions, address, when)
    return interactions
