"""
catalog-bridge: Book request reconciliation against a catalog service.

Looks up candidate records, picks the best one by identifier, builds and
sanitizes a creation payload against the service's live reference data, and
drives the request approval state machine that submits it.
"""

__version__ = "0.1.0"
