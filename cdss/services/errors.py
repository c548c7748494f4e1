from __future__ import annotations


class ServiceError(Exception):
    """A request-level failure carrying the HTTP status the route should return."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def unauthorized() -> ServiceError:
    return ServiceError("Unauthorized", 401)


def not_found(what: str = "Resource") -> ServiceError:
    return ServiceError(f"{what} not found", 404)
