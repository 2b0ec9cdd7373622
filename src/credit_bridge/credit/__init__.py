"""Credit application module -- submission, status reconciliation, and the feed cache.

Provides the partner HTTP clients and provider adapters, the CRM client,
ApplicationOrchestrator for submissions and follow-ups,
ReconciliationEngine for bank-to-CRM status sync, FeedService and
FeedRepository for the cached feed, and ReconciliationScheduler that runs
the periodic cycle.
"""
