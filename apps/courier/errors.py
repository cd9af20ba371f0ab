from __future__ import annotations


class CourierError(Exception):
    pass


class PersistenceUnavailable(CourierError):
    """Neither backend could serve the operation."""


class DomainError(CourierError):
    """Validation or lookup failure. Never triggers a backend fallback."""


class MissingTaskIdentifier(DomainError, ValueError):
    pass


class InvalidAmount(DomainError, ValueError):
    pass


class NotFound(DomainError, LookupError):
    pass
