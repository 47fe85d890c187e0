"""Repository layer for data access.

Repositories encapsulate database operations and provide a clean interface
for the versioned resource lifecycle.
"""

from fhirstore.repositories.resource import HistoryRecord, ResourceRepository, StoredResource

__all__ = ["HistoryRecord", "ResourceRepository", "StoredResource"]
