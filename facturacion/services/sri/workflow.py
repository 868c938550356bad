# facturacion/services/sri/workflow.py
# -*- coding: utf-8 -*-
"""
Orquestación del flujo SRI de un comprobante:

    build -> XSD -> generados/ -> firma -> firmados/
          -> Recepción (con contingencia) -> espera -> Autorización
          -> autorizados/<clave>.xml

El resultado siempre es un OutcomeReport (Authorized, Denied, NotReceived,
Pending, TransportError, UnexpectedResponse). Los errores de precondición y
de certificado no se traducen: se lanzan tal cual.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from django.conf import settings
from lxml import etree

from facturacion.services.sri.client import Estado, Mensaje, ProtocolResult, TransportClient
from facturacion.services.sri.errors import (
    DocumentInProgress,
    InvalidFieldWidth,
    SubmissionCancelled,
    TransportExhausted,
)
from facturacion.services.sri.signer import PKCS12Bundle, SignedDocument, Signer
from facturacion.services.sri.storage import (
    DocumentStore,
    Etapa,
    clave_lock,
    serializar_autorizacion,
)
from facturacion.services.sri.validator import assert_valid
from facturacion.services.sri.xml_builder import DocumentBuilder
from facturacion.utils import validar_clave_acceso

logger = logging.getLogger("facturacion.sri")

R = TypeVar("R")
Mensajes = Tuple[Mensaje, ...]


# ============================================================
# OutcomeReport
# ============================================================


@dataclass(frozen=True)
class Authorized:
    clave_acceso: str
    path: Path
    numero_autorizacion: str
    fecha_autorizacion: str
    estado = "AUTORIZADO"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "estado": self.estado,
            "clave_acceso": self.clave_acceso,
            "path": str(self.path),
            "numero_autorizacion": self.numero_autorizacion,
            "fecha_autorizacion": self.fecha_autorizacion,
        }


@dataclass(frozen=True)
class Denied:
    clave_acceso: str
    messages: Mensajes = ()
    estado = "NO_AUTORIZADO"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "estado": self.estado,
            "clave_acceso": self.clave_acceso,
            "mensajes": [m.as_dict() for m in self.messages],
        }


@dataclass(frozen=True)
class NotReceived:
    clave_acceso: str
    messages: Mensajes = ()
    estado = "DEVUELTA"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "estado": self.estado,
            "clave_acceso": self.clave_acceso,
            "mensajes": [m.as_dict() for m in self.messages],
        }


@dataclass(frozen=True)
class Pending:
    clave_acceso: str
    messages: Mensajes = ()
    estado = "EN_PROCESO"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "estado": self.estado,
            "clave_acceso": self.clave_acceso,
            "mensajes": [m.as_dict() for m in self.messages],
        }


@dataclass(frozen=True)
class TransportError:
    clave_acceso: str
    detail: str
    contingencia: bool = False
    estado = "ERROR_TRANSPORTE"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "estado": self.estado,
            "clave_acceso": self.clave_acceso,
            "detalle": self.detail,
            "contingencia": self.contingencia,
        }


@dataclass(frozen=True)
class UnexpectedResponse:
    clave_acceso: str
    detail: str
    messages: Mensajes = ()
    estado = "RESPUESTA_INESPERADA"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "estado": self.estado,
            "clave_acceso": self.clave_acceso,
            "detalle": self.detail,
            "mensajes": [m.as_dict() for m in self.messages],
        }


OutcomeReport = Union[Authorized, Denied, NotReceived, Pending, TransportError, UnexpectedResponse]


def match_outcome(
    report: OutcomeReport,
    *,
    authorized: Callable[[Authorized], R],
    denied: Callable[[Denied], R],
    not_received: Callable[[NotReceived], R],
    pending: Callable[[Pending], R],
    transport_error: Callable[[TransportError], R],
    unexpected: Callable[[UnexpectedResponse], R],
) -> R:
    """
    Despacho exhaustivo sobre OutcomeReport: todos los handlers son obligatorios.
    """
    if isinstance(report, Authorized):
        return authorized(report)
    if isinstance(report, Denied):
        return denied(report)
    if isinstance(report, NotReceived):
        return not_received(report)
    if isinstance(report, Pending):
        return pending(report)
    if isinstance(report, TransportError):
        return transport_error(report)
    if isinstance(report, UnexpectedResponse):
        return unexpected(report)
    raise TypeError(f"OutcomeReport desconocido: {type(report)!r}")


# ============================================================
# Helpers
# ============================================================


def _canonico(xml: Union[str, bytes]) -> bytes:
    data = xml.encode("utf-8") if isinstance(xml, str) else xml
    try:
        root = etree.fromstring(
            data.strip(),
            etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True),
        )
    except etree.XMLSyntaxError:
        return data.strip()
    return etree.tostring(root, method="c14n")


def _reporte_recepcion(clave: str, recepcion: ProtocolResult) -> Optional[OutcomeReport]:
    """None si fue RECIBIDA; si no, el OutcomeReport terminal de la recepción."""
    if recepcion.status == Estado.RECEIVED:
        return None
    if recepcion.status == Estado.NOT_RECEIVED:
        logger.warning(
            "Comprobante %s DEVUELTA: %s",
            clave,
            [m.as_dict() for m in recepcion.mensajes],
        )
        return NotReceived(clave, recepcion.mensajes)

    logger.error("Respuesta de recepción inesperada para %s: %s", clave, recepcion.raw)
    return UnexpectedResponse(
        clave,
        f"Estado de recepción no reconocido: {recepcion.estado_sri!r}",
        recepcion.mensajes,
    )


# ============================================================
# Orquestador
# ============================================================


class AuthorizationOrchestrator:
    """
    Secuencia Builder -> Signer -> TransportClient -> autorizados/.

    `submit` y `check_status` toman el lock de la clave de acceso; si otro
    proceso lo tiene se lanza DocumentInProgress.
    """

    def __init__(
        self,
        transport: Optional[TransportClient] = None,
        signer: Optional[Signer] = None,
        identity: Optional[PKCS12Bundle] = None,
        store: Optional[DocumentStore] = None,
        cancel_event: Optional[threading.Event] = None,
        settle_delay: Optional[float] = None,
        validar_xsd: bool = True,
    ):
        self.store = store or (transport.store if transport else DocumentStore())
        self.cancel_event = cancel_event or (
            transport.cancel_event if transport else threading.Event()
        )
        self.transport = transport or TransportClient(store=self.store, cancel_event=self.cancel_event)
        self.signer = signer or Signer()
        self._identity = identity
        self.settle_delay = float(
            getattr(settings, "SRI_SETTLE_DELAY", 3) if settle_delay is None else settle_delay
        )
        self.validar_xsd = validar_xsd

    @property
    def identity(self) -> PKCS12Bundle:
        if self._identity is None:
            self._identity = PKCS12Bundle.from_settings()
        return self._identity

    # -------------------------
    # Preparación
    # -------------------------

    def prepare(self, builder: DocumentBuilder) -> SignedDocument:
        """
        build + XSD (si está instalado) + generados/ + firma + firmados/.
        """
        documento = builder.build()
        clave = documento.clave_acceso

        if self.validar_xsd:
            assert_valid(documento.xml, documento.tipo)

        documento.save(self.store.ruta(Etapa.GENERADOS, clave))
        signed = self.signer.sign(documento, self.identity)
        signed.save(self.store.ruta(Etapa.FIRMADOS, clave))

        logger.info("Comprobante %s (%s) generado y firmado.", clave, documento.tipo)
        return signed

    # -------------------------
    # Envío
    # -------------------------

    def submit(self, builder: DocumentBuilder) -> OutcomeReport:
        signed = self.prepare(builder)
        return self.submit_signed(signed)

    def submit_signed(self, signed: SignedDocument) -> OutcomeReport:
        """
        Envía un comprobante ya firmado y, si fue RECIBIDA, espera
        SRI_SETTLE_DELAY y consulta la autorización.
        """
        clave = signed.clave_acceso
        with clave_lock(clave) as acquired:
            if not acquired:
                raise DocumentInProgress(clave)

            if self.store.existe(Etapa.AUTORIZADOS, clave):
                logger.info("Comprobante %s ya autorizado; no se reenvía.", clave)
                return self._authorized_from_store(clave)

            rechazo = self._recepcion(signed)
            if rechazo is not None:
                return rechazo

            if self.cancel_event.wait(self.settle_delay):
                logger.info("Espera de autorización cancelada para %s.", clave)
                return Pending(clave)

            return self._poll_y_persistir(clave, signed.xml)

    def send_stored(self, clave_acceso: str) -> OutcomeReport:
        """
        Envía la copia de firmados/ sin consultar autorización. Un comprobante
        RECIBIDA vuelve como Pending (la consulta se agenda aparte).
        """
        with clave_lock(clave_acceso) as acquired:
            if not acquired:
                raise DocumentInProgress(clave_acceso)
            if self.store.existe(Etapa.AUTORIZADOS, clave_acceso):
                return self._authorized_from_store(clave_acceso)

            xml = self.store.leer(Etapa.FIRMADOS, clave_acceso)
            signed = SignedDocument(clave_acceso=clave_acceso, tipo="", xml=xml)
            rechazo = self._recepcion(signed)
            if rechazo is not None:
                return rechazo
            return Pending(clave_acceso)

    def _recepcion(self, signed: SignedDocument) -> Optional[OutcomeReport]:
        """None si el SRI respondió RECIBIDA; si no, el OutcomeReport terminal."""
        clave = signed.clave_acceso
        try:
            recepcion = self.transport.send_with_contingency(signed)
        except (TransportExhausted, SubmissionCancelled) as exc:
            return TransportError(clave, str(exc), contingencia=True)

        return _reporte_recepcion(clave, recepcion)

    # -------------------------
    # Autorización
    # -------------------------

    def check_status(self, clave_acceso: str) -> OutcomeReport:
        """
        Consulta la autorización y persiste si quedó AUTORIZADO y aún no
        está guardado. Idempotente: el archivo autorizado no se reescribe y,
        si ya existe, no se consulta al SRI.
        """
        if not validar_clave_acceso(clave_acceso):
            raise InvalidFieldWidth("claveAcceso", "49 dígitos con verificador válido", clave_acceso)

        with clave_lock(clave_acceso) as acquired:
            if not acquired:
                raise DocumentInProgress(clave_acceso)

            if self.store.existe(Etapa.AUTORIZADOS, clave_acceso):
                return self._authorized_from_store(clave_acceso)

            local = None
            if self.store.existe(Etapa.FIRMADOS, clave_acceso):
                local = self.store.leer(Etapa.FIRMADOS, clave_acceso)
            return self._poll_y_persistir(clave_acceso, local)

    def _poll_y_persistir(self, clave: str, local_xml: Optional[bytes]) -> OutcomeReport:
        try:
            result = self.transport.poll_authorization(clave)
        except (TransportExhausted, SubmissionCancelled) as exc:
            return TransportError(clave, str(exc), contingencia=False)
        return self._resolver_autorizacion(clave, result, local_xml)

    def _resolver_autorizacion(
        self,
        clave: str,
        result: ProtocolResult,
        local_xml: Optional[bytes],
    ) -> OutcomeReport:
        if result.status == Estado.NOT_AUTHORIZED:
            logger.warning(
                "Comprobante %s NO AUTORIZADO: %s",
                clave,
                [m.as_dict() for m in result.mensajes],
            )
            return Denied(clave, result.mensajes)
        if result.status == Estado.PENDING:
            return Pending(clave, result.mensajes)
        if result.status != Estado.AUTHORIZED:
            logger.error("Respuesta de autorización inesperada para %s: %s", clave, result.raw)
            return UnexpectedResponse(
                clave,
                f"Estado de autorización no reconocido: {result.estado_sri!r}",
                result.mensajes,
            )

        if self.store.existe(Etapa.AUTORIZADOS, clave):
            return self._authorized_from_store(clave)

        autorizacion = result.autorizacion
        comprobante = (autorizacion.comprobante or "").strip()
        if not comprobante:
            logger.error("La autorización de %s no incluye el comprobante.", clave)
            return UnexpectedResponse(
                clave,
                "La respuesta AUTORIZADO no incluye el comprobante.",
                result.mensajes,
            )

        if local_xml is not None and _canonico(comprobante) != _canonico(local_xml):
            logger.warning(
                "El comprobante autorizado %s difiere de la copia firmada local; "
                "se conserva la versión devuelta por el SRI.",
                clave,
            )

        path = self.store.guardar(
            Etapa.AUTORIZADOS,
            clave,
            serializar_autorizacion(
                estado=autorizacion.estado,
                numero_autorizacion=autorizacion.numero_autorizacion or clave,
                fecha_autorizacion=autorizacion.fecha_autorizacion or "",
                ambiente=autorizacion.ambiente or "",
                comprobante=comprobante,
            ),
        )
        logger.info(
            "Comprobante %s AUTORIZADO (número %s) guardado en %s",
            clave,
            autorizacion.numero_autorizacion,
            path,
        )
        return self._authorized_from_store(clave)

    def _authorized_from_store(self, clave: str) -> Authorized:
        guardado = self.store.leer_autorizado(clave)
        return Authorized(
            clave_acceso=clave,
            path=guardado.path,
            numero_autorizacion=guardado.numero_autorizacion,
            fecha_autorizacion=guardado.fecha_autorizacion,
        )

    # -------------------------
    # Contingencia
    # -------------------------

    def retry_pending(self) -> List[OutcomeReport]:
        """
        Reenvía la cola de contingencia. RECIBIDA vuelve como Pending (la
        autorización se consulta aparte); DEVUELTA como NotReceived con los
        mensajes del SRI; una respuesta no reconocida como UnexpectedResponse.
        """
        return [
            _reporte_recepcion(clave, result) or Pending(clave)
            for clave, result in self.transport.retry_pending().items()
        ]


def get_orchestrator() -> AuthorizationOrchestrator:
    """Orquestador con la configuración de settings (gateway zeep, certificado, storage)."""
    return AuthorizationOrchestrator()
