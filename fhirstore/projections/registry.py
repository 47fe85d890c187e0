"""Projection registry and configuration.

The projection system maps each resource type to its current-state and
history tables, and to the extractors that derive indexed columns from the
FHIR JSON while keeping the document as the source of truth.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from fhirstore.schemas.resource import ResourceType

SearchKind = Literal["string", "token", "reference", "date", "boolean"]


@dataclass
class FieldExtractor:
    """Maps a FHIR element to an indexed column.

    Args:
        target_column: Name of the column in the current-state table.
        extractor: Function that extracts the value from FHIR JSON.
    """

    target_column: str
    extractor: Callable[[dict], Any]


@dataclass(frozen=True)
class SearchParameter:
    """A search parameter name bound to an indexed column.

    Args:
        name: Parameter name as used by callers (e.g. "family").
        column: Indexed column it filters on.
        kind: Matching semantics (see fhirstore.repositories.search).
    """

    name: str
    column: str
    kind: SearchKind


@dataclass
class ProjectionConfig:
    """Configuration for a resource type's storage and projection.

    Defines the tables a resource type lives in and how to extract indexed
    fields from FHIR JSON.
    """

    resource_type: ResourceType
    model_class: type
    history_class: type
    extractors: list[FieldExtractor] = field(default_factory=list)
    search_parameters: list[SearchParameter] = field(default_factory=list)
    # Column holding the compartment owner (None for Patient, which owns itself)
    subject_column: str | None = None
    # Column used as the natural key for duplicate detection, if any
    natural_key_column: str | None = None

    @property
    def columns(self) -> list[str]:
        return [e.target_column for e in self.extractors]

    def extract(self, fhir_data: dict) -> dict:
        """Extract all projection fields from FHIR data.

        Args:
            fhir_data: Raw FHIR resource JSON.

        Returns:
            Dictionary mapping column names to extracted values.
        """
        return {e.target_column: e.extractor(fhir_data) for e in self.extractors}

    def search_parameter(self, name: str) -> SearchParameter | None:
        """Look up a search parameter by name or by raw column name."""
        for param in self.search_parameters:
            if param.name == name:
                return param
        for param in self.search_parameters:
            if param.column == name:
                return param
        return None


# Module-level storage (not class-level to avoid shared mutable state)
_registry_configs: dict[ResourceType, ProjectionConfig] = {}


class ProjectionRegistry:
    """Registry of projection configurations by resource type.

    Keyed by the closed ResourceType enumeration; every type must be
    registered before the store can persist it.
    """

    @classmethod
    def register(cls, config: ProjectionConfig) -> None:
        """Register a projection configuration.

        Args:
            config: The projection configuration to register.
        """
        _registry_configs[config.resource_type] = config

    @classmethod
    def get(cls, resource_type: ResourceType | str) -> ProjectionConfig | None:
        """Get projection configuration for a resource type.

        Args:
            resource_type: Resource type (enum member or its value).

        Returns:
            ProjectionConfig if registered, None otherwise.
        """
        try:
            return _registry_configs.get(ResourceType(resource_type))
        except ValueError:
            return None

    @classmethod
    def require(cls, resource_type: ResourceType | str) -> ProjectionConfig:
        """Get a projection configuration, failing loudly if missing.

        Raises:
            RuntimeError: If the type has not been registered.
        """
        config = cls.get(resource_type)
        if config is None:
            raise RuntimeError(
                f"{resource_type} projection not registered. "
                "Call register_all_projections() at startup."
            )
        return config

    @classmethod
    def has_projection(cls, resource_type: ResourceType | str) -> bool:
        """Check if a resource type has a registered projection."""
        return cls.get(resource_type) is not None

    @classmethod
    def all_configs(cls) -> dict[ResourceType, ProjectionConfig]:
        """Get all registered projection configurations."""
        return _registry_configs.copy()

    @classmethod
    def _clear_for_testing(cls) -> None:
        """Clear all registered configurations. Internal use in tests only."""
        _registry_configs.clear()
