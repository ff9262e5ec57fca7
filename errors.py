"""
Error taxonomy for the generation flow.
Each error knows the HTTP status and the code reported to the client.
"""


class GenerationError(Exception):
    """Base class for errors surfaced by the generation flow."""

    status_code = 500
    code = "internal_error"
    public_message = "Ocurrió un error interno al generar la calaverita."

    def __init__(self, message: str = ""):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_detail(self) -> dict:
        return {"error": self.code, "message": self.public_message}


class InvalidIdentity(GenerationError):
    status_code = 400
    code = "invalid_email"
    public_message = "Por favor, ingresa un correo electrónico válido."


class IdentityNotAllowed(GenerationError):
    status_code = 403
    code = "domain_not_allowed"
    public_message = (
        "Lo sentimos, el correo que ingresaste no pertenece a la empresa, "
        "intenta de nuevo con un correo válido."
    )


class QuotaExceeded(GenerationError):
    status_code = 429
    code = "quota_exceeded"

    def __init__(self, limit: int, used: int):
        self.limit = limit
        self.used = used
        self.public_message = f"Has alcanzado el límite permitido de {limit} calaveritas."
        super().__init__(self.public_message)

    def to_detail(self) -> dict:
        return {
            "error": self.code,
            "message": self.public_message,
            "limit": self.limit,
            "used": self.used,
        }


class GenerationFailed(GenerationError):
    """External content generation failed, timed out or returned nothing usable."""


class StorageUnavailable(GenerationError):
    """Database unreachable, pool exhausted, or a statement failed."""
