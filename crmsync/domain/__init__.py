"""Provider-independent records and the rules that normalize and merge them."""

from . import contacts, exclusion, folders, helpers, messages, models

__all__ = ["contacts", "exclusion", "folders", "helpers", "messages", "models"]
