from crmsync.constants import CUSTOM_FOLDER_PREFIX, FOLDER_DISPLAY, FOLDER_LABELS
from crmsync.domain.models import Folder
from crmsync.errors import ValidationError


def classify_folder(display_name, well_known_name=None):
    """Return the canonical type tag for a folder by matching known system labels."""
    for candidate in (well_known_name, display_name):
        key = " ".join((candidate or "").strip().lower().split())
        if key in FOLDER_LABELS:
            return FOLDER_LABELS[key]
    return "custom"


def folder_key_for(folder_type, provider_id):
    if folder_type == "custom":
        return f"{CUSTOM_FOLDER_PREFIX}{provider_id}"
    return folder_type


def normalize_folder(record):
    """Convert a Graph mailFolder payload into a Folder."""
    provider_id = ((record or {}).get("id") or "").strip()
    if not provider_id:
        raise ValidationError("Folder record has no id.")
    display_name = (record.get("displayName") or "").strip()
    folder_type = classify_folder(display_name, record.get("wellKnownName"))
    return Folder(
        id=provider_id,
        key=folder_key_for(folder_type, provider_id),
        display_name=display_name or FOLDER_DISPLAY.get(folder_type) or f"Folder ({provider_id})",
        unread_count=int(record.get("unreadItemCount") or 0),
        total_count=int(record.get("totalItemCount") or 0),
        is_system=folder_type != "custom",
        folder_type=folder_type,
    )


def normalize_folders(records):
    """Normalize folder payloads, keeping the first folder seen for each system type."""
    folders = []
    seen_keys = set()
    for record in records or []:
        try:
            folder = normalize_folder(record)
        except ValidationError:
            continue
        if folder.key in seen_keys:
            # A second "Archive" etc. is a user folder that happens to share the label.
            folder.folder_type = "custom"
            folder.is_system = False
            folder.key = folder_key_for("custom", folder.id)
            if folder.key in seen_keys:
                continue
        seen_keys.add(folder.key)
        folders.append(folder)
    return folders


def find_trash_folder(folders):
    for folder in folders or []:
        if folder.folder_type == "trash":
            return folder
    return None
