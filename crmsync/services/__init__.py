"""Sync, propagation and caching services."""

from . import contact_propagation, mailbox_cache, retry, sync_orchestrator

__all__ = ["contact_propagation", "mailbox_cache", "retry", "sync_orchestrator"]
