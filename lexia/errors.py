"""
Error taxonomy shared by the relay and the client controller.
Every relay error carries the HTTP status it maps to and a display message
(Spanish, the single display language of the app).
"""
from fastapi import status

# Prefix of the in-band error fragment appended to an already-started 200 stream
STREAM_ERROR_SENTINEL = "STREAM_ERROR:"
# How the relay writes it: on a new line, right after the answer text
STREAM_ERROR_MARKER = f"\n{STREAM_ERROR_SENTINEL}"


class LexiaError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Error interno del servidor al procesar la solicitud."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(LexiaError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Solicitud inválida."


class AuthenticationFailed(LexiaError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Clave API inválida o sin permisos."


class Forbidden(LexiaError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Permiso denegado. Tu clave API podría no tener acceso a este modelo o servicio."


class ModelUnavailable(LexiaError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = (
        "No se pudo encontrar el modelo de IA especificado. Verifica el nombre del modelo y tu acceso."
    )


class RateLimited(LexiaError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Se ha superado el límite de solicitudes del proveedor. Inténtalo más tarde."


class UnknownRelayError(LexiaError):
    pass


class UpstreamStreamFailure(LexiaError):
    """Failure after the 200 response started; travels in-band, never as a status."""

    default_message = "Error procesando la respuesta del modelo."


def stream_error_fragment(detail: str | None) -> str:
    """In-band marker written to the body when the upstream stream breaks mid-flight."""
    message = UpstreamStreamFailure.default_message
    if detail:
        message += f" Detalles: {detail}"
    return f"{STREAM_ERROR_MARKER} {message}"


# Fixed start of every in-band error fragment; only this marks a failed stream
STREAM_ERROR_PREFIX = stream_error_fragment(None)
