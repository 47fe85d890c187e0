"""Search index projector.

Derives the indexed columns of a resource from its body. Projection is
pure and idempotent; a source element that is missing or malformed
projects to None instead of raising, since rejecting bad input is the
validator's job.
"""

import logging
from typing import Any

from fhirstore.projections.registry import ProjectionRegistry
from fhirstore.schemas.resource import ResourceType

logger = logging.getLogger(__name__)


def project(resource_type: ResourceType | str, body: dict) -> dict[str, Any]:
    """Compute the indexed fields for a resource body.

    Args:
        resource_type: Resource type of the body.
        body: Full FHIR JSON document.

    Returns:
        Mapping of indexed column name to value, one entry per column.

    Raises:
        RuntimeError: If the resource type has no registered projection.
    """
    config = ProjectionRegistry.require(resource_type)
    if not isinstance(body, dict):
        return {column: None for column in config.columns}

    indexed: dict[str, Any] = {}
    for extractor in config.extractors:
        try:
            indexed[extractor.target_column] = extractor.extractor(body)
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.warning(
                "Failed to project %s.%s; indexing as null",
                config.resource_type.value,
                extractor.target_column,
            )
            indexed[extractor.target_column] = None
    return indexed
