# facturacion/services/sri/validator.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

from django.conf import settings
from lxml import etree

from facturacion.services.sri.errors import XSDValidationError

logger = logging.getLogger("facturacion.sri")

VERSIONES_POR_TIPO = {
    "factura": "2.1.0",
    "nota_credito": "1.1.0",
}

XS_NS = "http://www.w3.org/2001/XMLSchema"

# (tipo, versión) ya advertidos como no disponibles
_ESQUEMAS_OMITIDOS: Set[Tuple[str, str]] = set()

# ruta -> (mtime_ns, esquema compilado)
_ESQUEMAS: Dict[Path, Tuple[int, etree.XMLSchema]] = {}


def _xsd_dir() -> Path:
    """Raíz de los esquemas: SRI_XSD_DIR/<versión>/<tipo>.xsd"""
    default = Path(getattr(settings, "BASE_DIR", ".")) / "facturacion" / "services" / "sri" / "xsd"
    return Path(getattr(settings, "SRI_XSD_DIR", default))


def _version(tipo: str, version: Optional[str]) -> str:
    return version or VERSIONES_POR_TIPO.get(tipo, "2.1.0")


def _quitar_refs_firma(schema_doc: etree._ElementTree) -> None:
    # Los XSD del SRI referencian ds:Signature sin incluir xmldsig-core-schema.xsd
    refs = schema_doc.getroot().xpath(
        ".//xs:element[@ref='ds:Signature']", namespaces={"xs": XS_NS}
    )
    for ref in refs:
        ref.getparent().remove(ref)


def get_xsd_schema(tipo: str, version: Optional[str] = None) -> etree.XMLSchema:
    """
    Esquema compilado para el tipo de comprobante.

    Lanza FileNotFoundError si el XSD no está instalado. Se recompila solo
    cuando el archivo cambia en disco.
    """
    ruta = _xsd_dir() / _version(tipo, version) / f"{tipo}.xsd"
    try:
        estado = ruta.stat()
    except OSError:
        estado = None
    if estado is None or estado.st_size == 0:
        raise FileNotFoundError(f"XSD no instalado: {ruta}")

    en_cache = _ESQUEMAS.get(ruta)
    if en_cache and en_cache[0] == estado.st_mtime_ns:
        return en_cache[1]

    logger.info("Compilando XSD %s", ruta)
    schema_doc = etree.parse(str(ruta))
    _quitar_refs_firma(schema_doc)
    schema = etree.XMLSchema(schema_doc)
    _ESQUEMAS[ruta] = (estado.st_mtime_ns, schema)
    return schema


def _omitir(tipo: str, version: str, motivo: Exception) -> List[str]:
    if (tipo, version) not in _ESQUEMAS_OMITIDOS:
        _ESQUEMAS_OMITIDOS.add((tipo, version))
        logger.warning("Validación XSD omitida para %s %s: %s", tipo, version, motivo)
    return []


def validate_xml(
    xml: Union[bytes, str],
    tipo: str,
    version: Optional[str] = None,
) -> List[str]:
    """
    Errores de validación del XML contra su XSD; lista vacía si es válido.

    Sin XSD instalado (o si no compila) no hay validación: se devuelve una
    lista vacía y se advierte una sola vez por tipo y versión.
    """
    version = _version(tipo, version)
    try:
        schema = get_xsd_schema(tipo, version)
    except (FileNotFoundError, etree.XMLSchemaParseError, etree.XMLSyntaxError) as exc:
        return _omitir(tipo, version, exc)

    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    try:
        doc = etree.fromstring(xml)
    except etree.XMLSyntaxError as exc:
        logger.error("XML mal formado (%s): %s", tipo, exc)
        return [f"XML mal formado: {exc}"]

    if schema.validate(doc):
        return []

    errores = [f"Línea {e.line}, columna {e.column}: {e.message}" for e in schema.error_log]
    logger.warning("XML %s no cumple el XSD %s: %s", tipo, version, errores)
    return errores


def assert_valid(xml: Union[bytes, str], tipo: str, version: Optional[str] = None) -> None:
    errores = validate_xml(xml, tipo, version)
    if errores:
        raise XSDValidationError(tipo, errores)
