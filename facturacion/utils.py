# facturacion/utils.py

"""
Clave de acceso de los comprobantes electrónicos del SRI.

La clave tiene 49 dígitos: 48 de contenido (fecha ddmmaaaa, tipo de
comprobante, RUC, ambiente, serie, secuencial, código numérico y tipo de
emisión) seguidos del dígito verificador módulo 11. No se usa Django aquí.
"""

from __future__ import annotations

import random
import re
from datetime import date, datetime
from typing import Optional, Tuple, Union

from facturacion.services.sri.errors import InvalidFieldWidth


FechaTipo = Union[date, datetime, str]

CLAVE_ACCESO_LONGITUD = 49

# (campo, ancho) en el orden en que se concatenan después de la fecha
CAMPOS_CLAVE: Tuple[Tuple[str, int], ...] = (
    ("tipo_comprobante", 2),
    ("ruc", 13),
    ("ambiente", 1),
    ("serie", 6),
    ("secuencial", 9),
    ("codigo_numerico", 8),
    ("tipo_emision", 1),
)

_PESOS_MODULO11 = (2, 3, 4, 5, 6, 7)


def generar_codigo_numerico(longitud: int = 8) -> str:
    """Cadena de `longitud` dígitos al azar (la clave usa 8)."""
    if longitud < 1:
        raise ValueError(f"longitud inválida para el código numérico: {longitud}")
    return "".join(random.choice("0123456789") for _ in range(longitud))


def modulo11(numero: str) -> int:
    """
    Dígito verificador módulo 11.

    Los pesos 2..7 se aplican cíclicamente empezando por el dígito de la
    derecha. El resultado 11 se convierte en 0 y el 10 en 1.
    """
    if not numero or not numero.isdigit():
        raise InvalidFieldWidth("numero", "solo dígitos", numero)

    total = sum(
        int(d) * _PESOS_MODULO11[pos % len(_PESOS_MODULO11)]
        for pos, d in enumerate(reversed(numero))
    )
    verificador = 11 - total % 11
    return {11: 0, 10: 1}.get(verificador, verificador)


def _fecha_clave(fecha: FechaTipo) -> str:
    if isinstance(fecha, datetime):
        fecha = fecha.date()
    if isinstance(fecha, date):
        return fecha.strftime("%d%m%Y")

    texto = str(fecha).strip()
    if not re.fullmatch(r"\d{8}", texto):
        raise InvalidFieldWidth("fecha", "8 dígitos (ddMMyyyy)", fecha)
    try:
        datetime.strptime(texto, "%d%m%Y")
    except ValueError as exc:
        raise InvalidFieldWidth("fecha", "una fecha ddMMyyyy válida", fecha) from exc
    return texto


def _digitos(campo: str, valor: object, ancho: int) -> str:
    texto = str(valor).strip()
    if len(texto) != ancho or not texto.isdigit():
        raise InvalidFieldWidth(campo, f"exactamente {ancho} dígito(s)", valor)
    return texto


def generar_clave_acceso(
    fecha_emision: FechaTipo,
    tipo_comprobante: str,
    ruc: str,
    ambiente: str,
    serie: str,
    secuencial: str,
    codigo_numerico: str,
    tipo_emision: str = "1",
) -> str:
    """
    Arma la clave de acceso de 49 dígitos.

    Ningún campo se rellena ni se trunca: un ancho distinto al de
    CAMPOS_CLAVE levanta InvalidFieldWidth.
    """
    valores = {
        "tipo_comprobante": tipo_comprobante,
        "ruc": ruc,
        "ambiente": ambiente,
        "serie": serie,
        "secuencial": secuencial,
        "codigo_numerico": codigo_numerico,
        "tipo_emision": tipo_emision,
    }
    cuerpo = _fecha_clave(fecha_emision) + "".join(
        _digitos(campo, valores[campo], ancho) for campo, ancho in CAMPOS_CLAVE
    )
    return f"{cuerpo}{modulo11(cuerpo)}"


def validar_clave_acceso(clave: Optional[str]) -> bool:
    """True si la clave tiene 49 dígitos y su dígito verificador es correcto."""
    if not clave or len(clave) != CLAVE_ACCESO_LONGITUD or not clave.isdigit():
        return False
    return modulo11(clave[:-1]) == int(clave[-1])


def extraer_fecha_clave_acceso(clave: Optional[str]) -> Optional[date]:
    """Fecha de emisión codificada en los 8 primeros dígitos, o None."""
    if not clave or len(clave) < 8:
        return None
    try:
        return datetime.strptime(clave[:8], "%d%m%Y").date()
    except ValueError:
        return None
