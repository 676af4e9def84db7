"""
Error taxonomy shared by the services and the HTTP layer.

Services raise these; ``main`` renders them as ``{"error": ..., "code": ...}``.
"""

from typing import List, Optional


class ShopError(Exception):
    status_code = 500
    code = "Internal"

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.fields = fields or []

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.fields:
            body["fields"] = self.fields
        return body


class InvalidInput(ShopError):
    status_code = 400
    code = "InvalidInput"


class Unauthorized(ShopError):
    status_code = 401
    code = "Unauthorized"


class Forbidden(ShopError):
    status_code = 403
    code = "Forbidden"


class NotFound(ShopError):
    status_code = 404
    code = "NotFound"


class Conflict(ShopError):
    status_code = 409
    code = "Conflict"


class InsufficientStock(ShopError):
    status_code = 400
    code = "InsufficientStock"


class Internal(ShopError):
    status_code = 500
    code = "Internal"
