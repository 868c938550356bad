# facturacion/tests/factories.py
# -*- coding: utf-8 -*-
"""
Datos de prueba compartidos: emisor, builders, PKCS12 desechable y un
gateway SRI falso (sin red).
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone as dt_timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import NameOID

from facturacion.services.sri.signer import PKCS12Bundle
from facturacion.services.sri.xml_builder import Comprador, Emisor
from facturacion.services.sri.xml_credit_note_builder import CreditNoteBuilder
from facturacion.services.sri.xml_invoice_builder import InvoiceBuilder

RUC_EMISOR = "1790012344001"
CLAVE_REFERENCIA = "1501202401179001234500110010010000000011234567810"
PASSWORD_P12 = "clave-pruebas"
IVA_15 = {"codigo": "2", "codigo_porcentaje": "4", "tarifa": "15"}


def emisor(**overrides) -> Emisor:
    datos = dict(
        ruc=RUC_EMISOR,
        razon_social="EMPRESA DE PRUEBAS S.A.",
        dir_matriz="Av. Amazonas N00-00, Quito",
        estab="001",
        pto_emi="002",
        ambiente="1",
    )
    datos.update(overrides)
    return Emisor(**datos)


def comprador() -> Comprador:
    return Comprador(
        tipo_identificacion="05",
        identificacion="1710034065",
        razon_social="JUAN PEREZ",
        direccion="Calle 1 y Calle 2",
    )


def factura_builder(secuencial: int = 1, fecha: Optional[date] = None) -> InvoiceBuilder:
    builder = InvoiceBuilder()
    builder.set_header(emisor(), secuencial, codigo_numerico="12345678")
    builder.set_body(fecha or date(2024, 1, 15), comprador())
    builder.add_line_item(
        codigo="P001",
        descripcion="Cable UTP Cat6",
        cantidad="2.5",
        precio_unitario="10.333333",
        impuestos=[IVA_15],
    )
    builder.set_totals()
    return builder


def nota_credito_builder(secuencial: int = 1) -> CreditNoteBuilder:
    builder = CreditNoteBuilder()
    builder.set_header(emisor(), secuencial, codigo_numerico="87654321")
    builder.set_body(
        fecha_emision=date(2024, 1, 20),
        comprador=comprador(),
        num_doc_modificado="001-002-000000001",
        fecha_emision_doc_sustento=date(2024, 1, 15),
        motivo="Devolución de mercadería",
    )
    builder.add_line_item(
        codigo="P001",
        descripcion="Cable UTP Cat6",
        cantidad="1",
        precio_unitario="10.00",
        impuestos=[IVA_15],
    )
    builder.set_totals()
    return builder


# =========================
# Certificado desechable
# =========================


@lru_cache(maxsize=None)
def _llave_rsa():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def pkcs12_bundle(
    desde: Optional[datetime] = None,
    hasta: Optional[datetime] = None,
    password: str = PASSWORD_P12,
) -> PKCS12Bundle:
    """
    PKCS12 autofirmado. Por defecto vigente desde ayer hasta dentro de un año.
    """
    ahora = datetime.now(dt_timezone.utc)
    desde = desde or ahora - timedelta(days=1)
    hasta = hasta or ahora + timedelta(days=365)

    key = _llave_rsa()
    nombre = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "EC"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "EMPRESA DE PRUEBAS S.A."),
            x509.NameAttribute(NameOID.COMMON_NAME, "FIRMA PRUEBAS"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(nombre)
        .issuer_name(nombre)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(desde)
        .not_valid_after(hasta)
        .sign(key, hashes.SHA256())
    )
    data = pkcs12.serialize_key_and_certificates(
        b"firma-pruebas",
        key,
        cert,
        None,
        BestAvailableEncryption(password.encode("utf-8")),
    )
    return PKCS12Bundle(data=data, password=password, origen="<pruebas>")


# =========================
# Gateway SRI falso
# =========================

Respuesta = Union[Dict[str, Any], BaseException, Callable[..., Dict[str, Any]]]


class FakeGateway:
    """
    Gateway en memoria. Cada lista se consume en orden; una excepción se
    lanza y un callable se invoca con el argumento de la llamada. El último
    elemento se repite cuando la lista se agota.
    """

    def __init__(
        self,
        recepcion: Optional[List[Respuesta]] = None,
        autorizacion: Optional[List[Respuesta]] = None,
    ):
        self.recepcion = list(recepcion or [recibida()])
        self.autorizacion = list(autorizacion or [en_proceso()])
        self.enviados: List[bytes] = []
        self.consultas: List[str] = []

    @staticmethod
    def _siguiente(cola: List[Respuesta], arg: Any) -> Dict[str, Any]:
        respuesta = cola.pop(0) if len(cola) > 1 else cola[0]
        if isinstance(respuesta, BaseException):
            raise respuesta
        if callable(respuesta):
            return respuesta(arg)
        return respuesta

    def validar_comprobante(self, xml: bytes) -> Dict[str, Any]:
        self.enviados.append(xml)
        return self._siguiente(self.recepcion, xml)

    def autorizacion_comprobante(self, clave_acceso: str) -> Dict[str, Any]:
        self.consultas.append(clave_acceso)
        return self._siguiente(self.autorizacion, clave_acceso)

    @property
    def ultimo_xml(self) -> Optional[bytes]:
        return self.enviados[-1] if self.enviados else None


def recibida() -> Dict[str, Any]:
    return {"estado": "RECIBIDA", "comprobantes": None}


def devuelta(clave: str, identificador: str = "35", mensaje: str = "ARCHIVO NO CUMPLE ESTRUCTURA XML") -> Dict[str, Any]:
    # El SRI colapsa el grupo de un solo elemento a objeto
    return {
        "estado": "DEVUELTA",
        "comprobantes": {
            "comprobante": {
                "claveAcceso": clave,
                "mensajes": {
                    "mensaje": {
                        "identificador": identificador,
                        "mensaje": mensaje,
                        "informacionAdicional": "Detalle del error",
                        "tipo": "ERROR",
                    }
                },
            }
        },
    }


def en_proceso(clave: str = "") -> Dict[str, Any]:
    return {"claveAccesoConsultada": clave or None, "numeroComprobantes": "0", "autorizaciones": None}


def autorizacion(
    clave: str,
    estado: str = "AUTORIZADO",
    comprobante: Optional[str] = None,
    mensajes: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    return {
        "claveAccesoConsultada": clave,
        "numeroComprobantes": "1",
        "autorizaciones": {
            "autorizacion": [
                {
                    "estado": estado,
                    "numeroAutorizacion": clave if estado == "AUTORIZADO" else None,
                    "fechaAutorizacion": datetime(2024, 1, 15, 10, 30, tzinfo=dt_timezone.utc),
                    "ambiente": "PRUEBAS",
                    "comprobante": comprobante,
                    "mensajes": {"mensaje": mensajes or []},
                }
            ]
        },
    }
