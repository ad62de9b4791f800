"""Infrastructure modules for crmsync."""

from . import cache_store, config_store, graph_client

__all__ = ["cache_store", "config_store", "graph_client"]
