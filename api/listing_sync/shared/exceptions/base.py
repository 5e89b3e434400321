"""
Excepción base de la aplicación.
"""
from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Error de request con status HTTP y código estable.

    El handler global de main.py lo serializa con to_response().
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message, "details": self.details}
