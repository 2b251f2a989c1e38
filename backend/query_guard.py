"""
Read-only guard for outbound CRM/ERP queries.

A textual prefix check; it complements read-only integration credentials,
it does not replace them.
"""

SALESFORCE_FORBIDDEN = ("INSERT", "UPDATE", "DELETE", "UPSERT", "MERGE")
NETSUITE_FORBIDDEN = SALESFORCE_FORBIDDEN + ("CREATE", "DROP", "ALTER")


class ReadOnlyViolationError(ValueError):
    """Raised when a write statement is sent through a read-only client."""
    pass


def ensure_read_only(query: str, forbidden: tuple = SALESFORCE_FORBIDDEN) -> str:
    """Return the query unchanged, or raise if it starts with a write keyword."""
    normalized = (query or "").strip().upper()
    for keyword in forbidden:
        if normalized.startswith(keyword):
            raise ReadOnlyViolationError(
                f"Write operations are not allowed ({keyword}). This is a read-only interface."
            )
    return query
