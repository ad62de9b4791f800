"""Contact normalization and merging.

Every source (address book, people graph, directory, harvested mail) is
converted into one ``Contact`` shape keyed by lower-cased email address.
Duplicates collapse through ``merge_contacts``; the higher-confidence source
is folded first so it wins scalar ties.
"""

import dataclasses
from datetime import datetime, timezone

from crmsync.constants import CUSTOMER_WITHIN_DAYS, INACTIVE_AFTER_DAYS, PROSPECT_WITHIN_DAYS
from crmsync.domain.helpers import domain_of, domain_to_company, name_from_address, parse_timestamp
from crmsync.domain.messages import is_valid_email, message_addresses
from crmsync.domain.models import Contact
from crmsync.errors import ValidationError

SOURCE_CONTACT = "contact"
SOURCE_USER = "user"
SOURCE_PERSON = "person"
SOURCE_MESSAGE = "message"

# Lower rank is more trustworthy.
SOURCE_RANK = {SOURCE_CONTACT: 0, SOURCE_USER: 1, SOURCE_PERSON: 2, SOURCE_MESSAGE: 3}
MESSAGE_DERIVED_TAG = "from-email"
SCALAR_FIELDS = ("name", "phone", "company", "position", "location", "notes", "provider_id")


def _first(values):
    for value in values or []:
        if value:
            return value
    return ""


def _full_name(record):
    display = (record.get("displayName") or "").strip()
    if display:
        return display
    return f"{record.get('givenName') or ''} {record.get('surname') or ''}".strip()


def _from_address_book(record):
    address = _first([(e or {}).get("address") for e in record.get("emailAddresses") or []])
    return {
        "email": address,
        "name": _full_name(record),
        "phone": _first(record.get("businessPhones")) or record.get("mobilePhone") or "",
        "company": record.get("companyName") or "",
        "position": record.get("jobTitle") or "",
        "location": record.get("officeLocation") or ((record.get("businessAddress") or {}).get("city") or ""),
        "status": "prospect",
        "tags": set(record.get("categories") or []),
        "notes": record.get("personalNotes") or "",
    }


def _from_person(record):
    scored = record.get("scoredEmailAddresses") or []
    primary = scored[0] if scored else {}
    person_type = (record.get("personType") or {}).get("subclass") or ""
    status = "prospect"
    if person_type == "OrganizationUser" or float(primary.get("relevanceScore") or 0) > 10:
        status = "customer"
    return {
        "email": primary.get("address") or "",
        "name": _full_name(record),
        "phone": _first([(p or {}).get("number") for p in record.get("phones") or []]),
        "company": record.get("companyName") or "",
        "position": record.get("jobTitle") or "",
        "location": record.get("officeLocation")
        or _first([(a or {}).get("city") for a in record.get("postalAddresses") or []]),
        "status": status,
        "tags": {person_type} if person_type else set(),
        "notes": record.get("personNotes") or "",
    }


def _from_user(record):
    return {
        "email": record.get("mail") or record.get("userPrincipalName") or "",
        "name": _full_name(record),
        "phone": _first(record.get("businessPhones")) or record.get("mobilePhone") or "",
        "company": record.get("companyName") or "",
        "position": record.get("jobTitle") or "",
        "location": record.get("officeLocation") or "",
        "status": "customer",
        "tags": {record["department"]} if record.get("department") else set(),
    }


def _from_message(record):
    email = (record.get("emailAddress") or {}).get("address") or record.get("address") or ""
    name = (record.get("emailAddress") or {}).get("name") or record.get("name") or ""
    return {
        "email": email,
        "name": name or name_from_address(email),
        "company": domain_to_company(domain_of(email)),
        "status": "lead",
        "tags": {MESSAGE_DERIVED_TAG},
        "last_interaction": parse_timestamp(record.get("lastInteraction")),
    }


_NORMALIZERS = {
    SOURCE_CONTACT: _from_address_book,
    SOURCE_PERSON: _from_person,
    SOURCE_USER: _from_user,
    SOURCE_MESSAGE: _from_message,
}


def normalize_contact(record, source_kind):
    """Convert one source record into a canonical Contact."""
    normalizer = _NORMALIZERS.get(source_kind)
    if normalizer is None:
        raise ValidationError(f"Unknown contact source: {source_kind}")
    fields = normalizer(record or {})
    email = (fields.pop("email") or "").strip().lower()
    if not is_valid_email(email):
        raise ValidationError(f"Contact record has no usable email address ({source_kind}).")
    fields["name"] = fields.get("name") or name_from_address(email)
    return Contact(
        email=email,
        provenance={source_kind},
        provider_id="" if source_kind == SOURCE_MESSAGE else (record or {}).get("id") or "",
        **fields,
    )


def normalize_contacts(records, source_kind):
    """Normalize a batch, returning (contacts, skipped_count)."""
    contacts = []
    skipped = 0
    for record in records or []:
        try:
            contacts.append(normalize_contact(record, source_kind))
        except ValidationError:
            skipped += 1
    return contacts, skipped


def merge_contacts(existing, incoming):
    """Merge two records for the same address into a new canonical Contact."""
    if existing.email.lower() != incoming.email.lower():
        raise ValidationError(f"Cannot merge {existing.email} with {incoming.email}")
    merged = dataclasses.replace(
        existing,
        tags=set(existing.tags) | set(incoming.tags),
        provenance=set(existing.provenance) | set(incoming.provenance),
        deal_value=max(existing.deal_value or 0, incoming.deal_value or 0),
    )
    for name in SCALAR_FIELDS:
        if not getattr(merged, name) and getattr(incoming, name):
            setattr(merged, name, getattr(incoming, name))
    if incoming.last_interaction is not None and (
        existing.last_interaction is None or incoming.last_interaction > existing.last_interaction
    ):
        merged.last_interaction = incoming.last_interaction
        merged.status = incoming.status
    return merged


def _rank(contact):
    return min((SOURCE_RANK.get(source, len(SOURCE_RANK)) for source in contact.provenance), default=len(SOURCE_RANK))


def merge_all(contacts):
    """Collapse contacts to exactly one per email address."""
    merged = {}
    for contact in sorted(contacts or [], key=_rank):
        key = contact.email.lower()
        current = merged.get(key)
        merged[key] = contact if current is None else merge_contacts(current, contact)
    return list(merged.values())


def compute_status(current, last_interaction, now=None):
    """Deterministic status decay from the age of the last interaction."""
    if last_interaction is None:
        return current
    now = now or datetime.now(timezone.utc)
    days = (now - last_interaction).days
    if days <= CUSTOMER_WITHIN_DAYS:
        return "customer"
    if days <= PROSPECT_WITHIN_DAYS:
        return "prospect"
    if days <= INACTIVE_AFTER_DAYS:
        return current
    return "inactive"


def apply_interactions(contacts, interactions, now=None):
    """Refresh last-interaction timestamps and recompute status for every contact."""
    now = now or datetime.now(timezone.utc)
    updated = []
    for contact in contacts or []:
        seen_at = (interactions or {}).get(contact.email.lower())
        last = contact.last_interaction
        if seen_at is not None and (last is None or seen_at > last):
            last = seen_at
        updated.append(
            dataclasses.replace(
                contact,
                last_interaction=last,
                status=compute_status(contact.status, last, now),
            )
        )
    return updated


def contacts_from_messages(messages, policy=None):
    """Harvest low-confidence contacts from message senders and recipients."""
    harvested = []
    for message in messages or []:
        names = {message.sender_address.lower(): message.sender_name} if message.sender_address else {}
        for field in ("toRecipients", "ccRecipients", "bccRecipients"):
            for entry in message.raw.get(field) or []:
                email = (entry or {}).get("emailAddress") or {}
                address = (email.get("address") or "").strip().lower()
                if address and address not in names:
                    names[address] = (email.get("name") or "").strip()
        for address in message_addresses(message):
            if policy is not None and policy.should_exclude(address):
                continue
            record = {
                "emailAddress": {"address": address, "name": names.get(address, "")},
                "lastInteraction": message.received_at,
            }
            try:
                harvested.append(normalize_contact(record, SOURCE_MESSAGE))
            except ValidationError:
                continue
    return merge_all(harvested)
