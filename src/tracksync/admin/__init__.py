"""Read-only cross-account reporting."""

from tracksync.admin.aggregator import AdminAggregator, AdminReport, summarize

__all__ = ["AdminAggregator", "AdminReport", "summarize"]
