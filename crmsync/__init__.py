"""Mailbox and contact sync engine with a durable local cache."""

from . import constants, domain, errors, infra, paths, services

__all__ = [
    "constants",
    "domain",
    "errors",
    "infra",
    "paths",
    "services",
]
