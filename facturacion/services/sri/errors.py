# facturacion/services/sri/errors.py
# -*- coding: utf-8 -*-
"""
Taxonomía de errores del módulo SRI.

Cada excepción declara su categoría (ErrorKind) para que la lógica de reintentos
y la orquestación decidan por tipo y no por el texto del mensaje.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    PRECONDITION = "PRECONDICION"
    CERTIFICATE = "CERTIFICADO"
    TRANSPORT = "TRANSPORTE"
    REJECTION = "RECHAZO"
    UNEXPECTED = "INESPERADO"


class SRIError(Exception):
    """Base de todos los errores del flujo SRI."""

    kind: ErrorKind = ErrorKind.UNEXPECTED
    retryable: bool = False


# =========================
# Precondiciones (nunca se reintentan)
# =========================


class PreconditionError(SRIError, ValueError):
    kind = ErrorKind.PRECONDITION


class InvalidFieldWidth(PreconditionError):
    """Campo de ancho fijo (clave de acceso, RUC, serie...) mal formado."""

    def __init__(self, campo: str, esperado: str, valor: object) -> None:
        self.campo = campo
        self.esperado = esperado
        self.valor = valor
        super().__init__(f"{campo} debe tener {esperado}; recibido {valor!r}.")


class MissingRequiredField(PreconditionError):
    """Campo obligatorio ausente al momento de build()."""

    def __init__(self, campo: str, seccion: Optional[str] = None) -> None:
        self.campo = campo
        self.seccion = seccion
        donde = f" en <{seccion}>" if seccion else ""
        super().__init__(f"Falta el campo obligatorio '{campo}'{donde}.")


class XSDValidationError(PreconditionError):
    def __init__(self, tipo: str, errores: list) -> None:
        self.tipo = tipo
        self.errores = errores
        super().__init__(f"El XML de {tipo} no cumple el XSD: {errores}")


class MalformedDocument(PreconditionError):
    """El XML recibido para firmar no está bien formado."""


class BatchEmpty(PreconditionError):
    def __init__(self) -> None:
        super().__init__("No hay comprobantes para enviar en lote.")


class BatchSizeExceeded(PreconditionError):
    def __init__(self, cantidad: int, limite: int) -> None:
        self.cantidad = cantidad
        self.limite = limite
        super().__init__(
            f"El lote excede el límite de {limite} comprobantes (recibidos {cantidad})."
        )


class DocumentInProgress(PreconditionError):
    """Otro proceso tiene tomada la clave de acceso."""

    def __init__(self, clave_acceso: str) -> None:
        self.clave_acceso = clave_acceso
        super().__init__(f"El comprobante {clave_acceso} ya está siendo procesado.")


# =========================
# Certificado (fatales)
# =========================


class CertificateError(SRIError):
    """Errores relacionados con certificado/carga de PKCS12."""

    kind = ErrorKind.CERTIFICATE


class CertificateNotFound(CertificateError):
    pass


class InvalidPassphrase(CertificateError):
    pass


class CertificateExpired(CertificateError):
    pass


class CertificateNotYetValid(CertificateError):
    pass


# =========================
# Transporte
# =========================


class TransportExhausted(SRIError):
    """Se agotaron los reintentos contra un Web Service del SRI."""

    kind = ErrorKind.TRANSPORT
    retryable = True

    def __init__(
        self,
        operacion: str,
        clave_acceso: Optional[str],
        intentos: int,
        causa: Optional[BaseException],
    ) -> None:
        self.operacion = operacion
        self.clave_acceso = clave_acceso
        self.intentos = intentos
        self.causa = causa
        super().__init__(
            f"Error en {operacion} ({clave_acceso}) después de {intentos} intentos: {causa}"
        )


class SubmissionCancelled(SRIError):
    kind = ErrorKind.TRANSPORT

    def __init__(self, operacion: str, clave_acceso: Optional[str], intentos: int) -> None:
        self.operacion = operacion
        self.clave_acceso = clave_acceso
        self.intentos = intentos
        super().__init__(
            f"{operacion} cancelado para {clave_acceso} tras {intentos} intento(s)."
        )
