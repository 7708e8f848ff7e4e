"""Error taxonomy for the Weave graph core."""


class WeaveError(Exception):
    """Base class for all Weave errors."""
    pass


class ConfigurationError(WeaveError):
    """Configuration is missing or invalid."""
    pass


class ExtractionUnavailableError(WeaveError):
    """No usable text-understanding provider is configured."""
    pass


class TransportFailure(WeaveError):
    """Extraction service unreachable or returned a non-success response."""
    pass


class ParseFailure(WeaveError):
    """Extraction response did not contain a locatable, valid JSON object."""
    pass


class EntityNotFoundError(WeaveError):
    """An operation referenced an entity id that does not exist."""

    def __init__(self, entity_id: str, message: str | None = None):
        self.entity_id = entity_id
        super().__init__(message or f"Entity not found: {entity_id}")


class UnresolvedEndpointError(EntityNotFoundError):
    """A relationship endpoint does not reference an existing entity."""
    pass
