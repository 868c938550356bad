# facturacion/services/sri/client.py
# -*- coding: utf-8 -*-
"""
Cliente de los Web Services Offline del SRI.

- ZeepSRIGateway: habla SOAP (zeep) con RecepcionComprobantesOffline y
  AutorizacionComprobantesOffline.
- TransportClient: reintentos, copia en 'enviados', envío en lote y cola
  de contingencia sobre cualquier gateway que cumpla SRIGateway.
"""
from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, TypeVar

import requests
from django.conf import settings
from lxml import etree
from zeep import Client
from zeep.exceptions import Fault
from zeep.exceptions import TransportError as ZeepTransportError
from zeep.helpers import serialize_object
from zeep.transports import Transport

from facturacion.services.sri.errors import (
    BatchEmpty,
    BatchSizeExceeded,
    SubmissionCancelled,
    TransportExhausted,
)
from facturacion.services.sri.signer import SignedDocument
from facturacion.services.sri.storage import DocumentStore, Etapa, clave_lock
from facturacion.services.sri.xml_builder import Emisor
from facturacion.utils import generar_clave_acceso, generar_codigo_numerico

logger = logging.getLogger("facturacion.sri")

T = TypeVar("T")

# Errores de transporte que se reintentan. Un DEVUELTA / NO AUTORIZADO no es
# una excepción: es una respuesta terminal.
TRANSIENT_ERRORS = (
    requests.RequestException,
    Fault,
    ZeepTransportError,
    OSError,
)

LOTE_MAXIMO = 50


# =========================
# Endpoints SRI (tomados desde settings)
# =========================

WSDL_DEFAULTS = {
    "SRI_TEST_RECEPCION_WSDL": "https://celcer.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline?wsdl",
    "SRI_TEST_AUTORIZACION_WSDL": "https://celcer.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline?wsdl",
    "SRI_PROD_RECEPCION_WSDL": "https://cel.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline?wsdl",
    "SRI_PROD_AUTORIZACION_WSDL": "https://cel.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline?wsdl",
}


def _wsdl(nombre: str) -> str:
    return getattr(settings, nombre, WSDL_DEFAULTS[nombre])


# =========================
# Resultado normalizado
# =========================


class Estado(str, Enum):
    RECEIVED = "RECIBIDA"
    NOT_RECEIVED = "DEVUELTA"
    AUTHORIZED = "AUTORIZADO"
    NOT_AUTHORIZED = "NO AUTORIZADO"
    PENDING = "EN PROCESO"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Mensaje:
    """Mensaje del SRI, preservado tal cual llega."""

    identificador: Optional[str]
    mensaje: Optional[str]
    informacion_adicional: Optional[str] = None
    tipo: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Mensaje":
        def _s(valor: Any) -> Optional[str]:
            return None if valor is None else str(valor)

        return cls(
            identificador=_s(data.get("identificador")),
            mensaje=_s(data.get("mensaje")),
            informacion_adicional=_s(data.get("informacionAdicional")),
            tipo=_s(data.get("tipo")),
        )

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "identificador": self.identificador,
            "mensaje": self.mensaje,
            "informacion_adicional": self.informacion_adicional,
            "tipo": self.tipo,
        }


@dataclass(frozen=True)
class Autorizacion:
    estado: str
    numero_autorizacion: Optional[str]
    fecha_autorizacion: Optional[str]
    ambiente: Optional[str]
    comprobante: Optional[str]


@dataclass(frozen=True)
class ProtocolResult:
    """
    Respuesta normalizada de Recepción o Autorización. Nunca se muta.
    """

    status: Estado
    clave_acceso: Optional[str]
    mensajes: Tuple[Mensaje, ...] = ()
    estado_sri: Optional[str] = None
    autorizacion: Optional[Autorizacion] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


def as_list(value: Any) -> List[Any]:
    """
    El SRI colapsa un grupo de un solo elemento a un objeto: normaliza
    None | dict | list a lista.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _grupo(data: Any, contenedor: str, item: str) -> List[Any]:
    """Lee data[contenedor][item] como lista (p. ej. mensajes/mensaje)."""
    if not isinstance(data, Mapping):
        return []
    cont = data.get(contenedor)
    if isinstance(cont, Mapping):
        return as_list(cont.get(item))
    return as_list(cont)


def _normalizar_estado(valor: Any) -> str:
    return " ".join(str(valor or "").replace("_", " ").upper().split())


def _texto_fecha(valor: Any) -> Optional[str]:
    if valor is None:
        return None
    if hasattr(valor, "isoformat"):
        return valor.isoformat()
    return str(valor)


def parse_recepcion(data: Mapping[str, Any], clave_acceso: Optional[str] = None) -> ProtocolResult:
    """
    RECIBIDA -> RECEIVED, DEVUELTA -> NOT_RECEIVED, cualquier otra cosa -> ERROR.
    """
    estado = _normalizar_estado(data.get("estado")) if isinstance(data, Mapping) else ""
    status = {
        "RECIBIDA": Estado.RECEIVED,
        "DEVUELTA": Estado.NOT_RECEIVED,
    }.get(estado, Estado.ERROR)

    mensajes: List[Mensaje] = []
    for comp in _grupo(data, "comprobantes", "comprobante"):
        if not isinstance(comp, Mapping):
            continue
        clave_acceso = comp.get("claveAcceso") or clave_acceso
        for m in _grupo(comp, "mensajes", "mensaje"):
            if isinstance(m, Mapping):
                mensajes.append(Mensaje.from_dict(m))

    return ProtocolResult(
        status=status,
        clave_acceso=clave_acceso,
        mensajes=tuple(mensajes),
        estado_sri=estado or None,
        raw=dict(data) if isinstance(data, Mapping) else {"value": data},
    )


def parse_autorizacion(data: Mapping[str, Any], clave_acceso: Optional[str] = None) -> ProtocolResult:
    """
    AUTORIZADO -> AUTHORIZED, NO AUTORIZADO -> NOT_AUTHORIZED,
    EN PROCESO o sin autorizaciones -> PENDING, otro -> ERROR.

    Si llegan varias autorizaciones (reintentos previos), gana la AUTORIZADO.
    """
    raw = dict(data) if isinstance(data, Mapping) else {"value": data}
    if isinstance(data, Mapping):
        clave_acceso = data.get("claveAccesoConsultada") or clave_acceso

    autorizaciones = [
        a for a in _grupo(data, "autorizaciones", "autorizacion") if isinstance(a, Mapping)
    ]
    if not autorizaciones:
        return ProtocolResult(status=Estado.PENDING, clave_acceso=clave_acceso, raw=raw)

    elegida = next(
        (a for a in autorizaciones if _normalizar_estado(a.get("estado")) == "AUTORIZADO"),
        autorizaciones[0],
    )
    estado = _normalizar_estado(elegida.get("estado"))
    if estado == "AUTORIZADO":
        status = Estado.AUTHORIZED
    elif estado == "NO AUTORIZADO":
        status = Estado.NOT_AUTHORIZED
    elif estado in ("EN PROCESO", ""):
        status = Estado.PENDING
    else:
        status = Estado.ERROR

    mensajes = tuple(
        Mensaje.from_dict(m)
        for m in _grupo(elegida, "mensajes", "mensaje")
        if isinstance(m, Mapping)
    )
    ambiente = elegida.get("ambiente")
    autorizacion = Autorizacion(
        estado=estado,
        numero_autorizacion=elegida.get("numeroAutorizacion"),
        fecha_autorizacion=_texto_fecha(elegida.get("fechaAutorizacion")),
        ambiente=None if ambiente is None else str(ambiente),
        comprobante=elegida.get("comprobante"),
    )
    return ProtocolResult(
        status=status,
        clave_acceso=clave_acceso,
        mensajes=mensajes,
        estado_sri=estado or None,
        autorizacion=autorizacion,
        raw=raw,
    )


# =========================
# Gateway SOAP
# =========================


class SRIGateway(Protocol):
    def validar_comprobante(self, xml: bytes) -> Dict[str, Any]:
        ...

    def autorizacion_comprobante(self, clave_acceso: str) -> Dict[str, Any]:
        ...


def _serializar(respuesta: Any) -> Dict[str, Any]:
    data = serialize_object(respuesta, dict)
    if not isinstance(data, dict):
        data = {"value": data}
    return data


class ZeepSRIGateway:
    """
    Cliente SOAP (zeep) para los Web Services Offline del SRI:

    - RecepcionComprobantesOffline: validarComprobante(xml)
    - AutorizacionComprobantesOffline: autorizacionComprobante(claveAccesoComprobante)

    Los clientes zeep se crean en la primera llamada: la descarga del WSDL
    cuenta como un intento más dentro de los reintentos del TransportClient.
    """

    def __init__(
        self,
        ambiente: Optional[str] = None,
        timeout: Optional[int] = None,
        verify: Optional[bool] = None,
        session: Optional[requests.Session] = None,
    ):
        self.ambiente = str(ambiente or getattr(settings, "SRI_AMBIENTE", "1"))
        self.timeout = timeout or int(getattr(settings, "SRI_REQUEST_TIMEOUT", 30))
        self.verify = getattr(settings, "SRI_SSL_VERIFY", False) if verify is None else verify
        self._session = session
        self._recepcion_client: Optional[Client] = None
        self._autorizacion_client: Optional[Client] = None

        if self.ambiente == "1":
            self.recepcion_wsdl = _wsdl("SRI_TEST_RECEPCION_WSDL")
            self.autorizacion_wsdl = _wsdl("SRI_TEST_AUTORIZACION_WSDL")
        else:
            self.recepcion_wsdl = _wsdl("SRI_PROD_RECEPCION_WSDL")
            self.autorizacion_wsdl = _wsdl("SRI_PROD_AUTORIZACION_WSDL")

    def _transport(self) -> Transport:
        session = self._session
        if session is None:
            session = requests.Session()
            session.verify = self.verify
            session.headers.update({"User-Agent": "FacturacionSRI/1.0 (Python/Zeep)"})
            self._session = session

        logger.info(
            "Inicializando cliente SRI ambiente=%s [RecepcionWSDL=%s, AutorizacionWSDL=%s, "
            "verify_ssl=%s, timeout=%s]",
            self.ambiente,
            self.recepcion_wsdl,
            self.autorizacion_wsdl,
            self.verify,
            self.timeout,
        )
        return Transport(session=session, timeout=self.timeout, operation_timeout=self.timeout)

    @property
    def recepcion_client(self) -> Client:
        if self._recepcion_client is None:
            self._recepcion_client = Client(wsdl=self.recepcion_wsdl, transport=self._transport())
        return self._recepcion_client

    @property
    def autorizacion_client(self) -> Client:
        if self._autorizacion_client is None:
            self._autorizacion_client = Client(wsdl=self.autorizacion_wsdl, transport=self._transport())
        return self._autorizacion_client

    def validar_comprobante(self, xml: bytes) -> Dict[str, Any]:
        respuesta = self.recepcion_client.service.validarComprobante(xml)
        return _serializar(respuesta)

    def autorizacion_comprobante(self, clave_acceso: str) -> Dict[str, Any]:
        respuesta = self.autorizacion_client.service.autorizacionComprobante(
            claveAccesoComprobante=clave_acceso
        )
        return _serializar(respuesta)


# =========================
# TransportClient
# =========================


def tipo_desde_xml(xml: bytes) -> str:
    """factura / nota_credito a partir del tag raíz."""
    try:
        root = etree.fromstring(xml, etree.XMLParser(resolve_entities=False, no_network=True))
    except etree.XMLSyntaxError:
        return "desconocido"
    return {"factura": "factura", "notaCredito": "nota_credito"}.get(
        etree.QName(root).localname, "desconocido"
    )


class TransportClient:
    """
    Envío y consulta con reintentos fijos y cola de contingencia.

    - Reintenta solo errores de transporte (TRANSIENT_ERRORS), hasta
      SRI_RETRY_MAX intentos con SRI_RETRY_DELAY segundos entre ellos.
    - Las esperas son cancel_event.wait(delay): si el evento se activa se
      lanza SubmissionCancelled entre intentos.
    """

    def __init__(
        self,
        gateway: Optional[SRIGateway] = None,
        store: Optional[DocumentStore] = None,
        emisor: Optional[Emisor] = None,
        cancel_event: Optional[threading.Event] = None,
        retry_max: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.emisor = emisor
        self.gateway = gateway or ZeepSRIGateway(ambiente=emisor.ambiente if emisor else None)
        self.store = store or DocumentStore()
        self.cancel_event = cancel_event or threading.Event()
        self.retry_max = max(1, int(retry_max or getattr(settings, "SRI_RETRY_MAX", 3)))
        self.retry_delay = float(
            getattr(settings, "SRI_RETRY_DELAY", 3) if retry_delay is None else retry_delay
        )

    def _con_reintentos(self, operacion: str, clave_acceso: Optional[str], fn: Callable[[], T]) -> T:
        ultimo_error: Optional[BaseException] = None

        for intento in range(1, self.retry_max + 1):
            if self.cancel_event.is_set():
                raise SubmissionCancelled(operacion, clave_acceso, intento - 1)
            try:
                return fn()
            except TRANSIENT_ERRORS as exc:
                ultimo_error = exc
                logger.warning(
                    "%s falló para %s (intento %s/%s): %s",
                    operacion,
                    clave_acceso,
                    intento,
                    self.retry_max,
                    exc,
                )
                if intento < self.retry_max and self.cancel_event.wait(self.retry_delay):
                    raise SubmissionCancelled(operacion, clave_acceso, intento) from exc

        logger.error(
            "%s agotó %s intentos para %s: %s",
            operacion,
            self.retry_max,
            clave_acceso,
            ultimo_error,
        )
        raise TransportExhausted(operacion, clave_acceso, self.retry_max, ultimo_error)

    # -------------------------
    # Recepción
    # -------------------------

    def _enviar(self, xml: bytes, clave_acceso: str, prefijo: str = "") -> ProtocolResult:
        data = self._con_reintentos(
            "validarComprobante",
            clave_acceso,
            lambda: self.gateway.validar_comprobante(xml),
        )
        self.store.guardar(Etapa.ENVIADOS, clave_acceso, xml, prefijo=prefijo)

        result = parse_recepcion(data, clave_acceso)
        logger.info(
            "Recepción %s: estado=%s (%s) mensajes=%s",
            clave_acceso,
            result.status.name,
            result.estado_sri,
            [m.as_dict() for m in result.mensajes],
        )
        return result

    def send(self, signed: SignedDocument) -> ProtocolResult:
        """
        Envía el XML firmado a Recepción. Un DEVUELTA vuelve como
        NOT_RECEIVED (no se reintenta); si se agotan los intentos por errores
        de transporte se lanza TransportExhausted.
        """
        return self._enviar(signed.xml, signed.clave_acceso)

    def send_batch(self, signed_list: Sequence[SignedDocument]) -> ProtocolResult:
        """
        Envía hasta 50 comprobantes dentro de un <lote> con su propia clave
        de acceso. Valida el tamaño antes de cualquier llamada de red.
        """
        documentos = list(signed_list)
        if not documentos:
            raise BatchEmpty()
        if len(documentos) > LOTE_MAXIMO:
            raise BatchSizeExceeded(len(documentos), LOTE_MAXIMO)

        emisor = self.emisor or Emisor.from_settings()
        clave_lote = generar_clave_acceso(
            fecha_emision=date.today(),
            tipo_comprobante="01",
            ruc=emisor.ruc,
            ambiente=emisor.ambiente,
            serie=emisor.serie,
            secuencial=f"{random.randint(1, 999999999):09d}",
            codigo_numerico=generar_codigo_numerico(8),
            tipo_emision=emisor.tipo_emision,
        )

        lote = etree.Element("lote", version="1.0.0")
        etree.SubElement(lote, "claveAcceso").text = clave_lote
        etree.SubElement(lote, "ruc").text = emisor.ruc
        comprobantes = etree.SubElement(lote, "comprobantes")
        for doc in documentos:
            etree.SubElement(comprobantes, "comprobante").text = etree.CDATA(doc.texto)

        lote_xml = etree.tostring(lote, encoding="UTF-8", xml_declaration=True)
        self.store.guardar(Etapa.GENERADOS, clave_lote, lote_xml, prefijo="lote_")

        logger.info("Enviando lote %s con %s comprobantes.", clave_lote, len(documentos))
        return self._enviar(lote_xml, clave_lote, prefijo="lote_")

    # -------------------------
    # Autorización
    # -------------------------

    def poll_authorization(self, clave_acceso: str) -> ProtocolResult:
        data = self._con_reintentos(
            "autorizacionComprobante",
            clave_acceso,
            lambda: self.gateway.autorizacion_comprobante(clave_acceso),
        )
        result = parse_autorizacion(data, clave_acceso)
        logger.info(
            "Autorización %s: estado=%s (%s) mensajes=%s",
            clave_acceso,
            result.status.name,
            result.estado_sri,
            [m.as_dict() for m in result.mensajes],
        )
        return result

    # -------------------------
    # Contingencia
    # -------------------------

    def send_with_contingency(self, signed: SignedDocument) -> ProtocolResult:
        """
        send(); si falla el transporte deja una copia en contingencia/ y
        relanza el error. La copia no sustituye al envío.
        """
        try:
            return self.send(signed)
        except (TransportExhausted, SubmissionCancelled):
            path = self.store.guardar(Etapa.CONTINGENCIA, signed.clave_acceso, signed.xml)
            logger.error(
                "Comprobante %s movido a contingencia: %s",
                signed.clave_acceso,
                path,
            )
            raise

    def retry_pending(self) -> Dict[str, ProtocolResult]:
        """
        Reintenta los pendientes de contingencia y devuelve la respuesta del
        SRI por clave, en el orden del directorio.

        - RECIBIDA o DEVUELTA: la entrada sale de contingencia (el DEVUELTA
          es terminal y sus mensajes viajan en el resultado).
        - Respuesta no reconocida (ERROR): se informa y la entrada se queda.
        - Falla de transporte o clave bloqueada por otro proceso: se salta.

        Entrega al menos una vez: el SRI puede recibir duplicados si un envío
        previo llegó pero la copia no se borró.
        """
        resultados: Dict[str, ProtocolResult] = {}

        for clave in self.store.listar(Etapa.CONTINGENCIA):
            if self.cancel_event.is_set():
                logger.info("Reintento de contingencia cancelado.")
                break

            with clave_lock(clave) as acquired:
                if not acquired:
                    continue
                try:
                    xml = self.store.leer(Etapa.CONTINGENCIA, clave)
                except FileNotFoundError:
                    continue

                signed = SignedDocument(clave_acceso=clave, tipo=tipo_desde_xml(xml), xml=xml)
                try:
                    result = self.send(signed)
                except TransportExhausted as exc:
                    logger.warning("Contingencia %s sigue pendiente: %s", clave, exc)
                    continue
                except SubmissionCancelled:
                    logger.info("Reintento de contingencia cancelado en %s.", clave)
                    break

                resultados[clave] = result
                if result.status == Estado.ERROR:
                    logger.error(
                        "Contingencia %s: respuesta no reconocida, se conserva: %s",
                        clave,
                        result.raw,
                    )
                    continue

                self.store.eliminar(Etapa.CONTINGENCIA, clave)
                logger.info(
                    "Contingencia %s enviada: estado=%s mensajes=%s",
                    clave,
                    result.status.name,
                    [m.as_dict() for m in result.mensajes],
                )

        return resultados
