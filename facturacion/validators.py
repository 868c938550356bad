# facturacion/validators.py
# -*- coding: utf-8 -*-
"""
Validación de identificaciones ecuatorianas (cédula, RUC) y de códigos
de catálogo SRI usados en la entrada de comprobantes.
"""
from __future__ import annotations

import re
from typing import Optional

CONSUMIDOR_FINAL = "9999999999999"

# Tipos de identificación del comprador (tabla 6 de la ficha técnica)
TIPO_RUC = "04"
TIPO_CEDULA = "05"
TIPO_PASAPORTE = "06"
TIPO_CONSUMIDOR_FINAL = "07"
TIPO_EXTERIOR = "08"

TIPOS_IDENTIFICACION = {
    TIPO_RUC: "RUC",
    TIPO_CEDULA: "Cédula",
    TIPO_PASAPORTE: "Pasaporte",
    TIPO_CONSUMIDOR_FINAL: "Consumidor final",
    TIPO_EXTERIOR: "Identificación del exterior",
}

COEFICIENTES_CEDULA = (2, 1, 2, 1, 2, 1, 2, 1, 2)
COEFICIENTES_PRIVADA = (4, 3, 2, 7, 6, 5, 4, 3, 2)
COEFICIENTES_PUBLICA = (3, 2, 7, 6, 5, 4, 3, 2)


def _provincia_valida(valor: str) -> bool:
    provincia = int(valor[:2])
    return 1 <= provincia <= 24 or provincia == 30


def _digito_modulo10(digitos: str) -> int:
    suma = 0
    for digito, coef in zip(digitos, COEFICIENTES_CEDULA):
        producto = int(digito) * coef
        suma += producto - 9 if producto >= 10 else producto
    residuo = suma % 10
    return 0 if residuo == 0 else 10 - residuo


def _digito_modulo11(digitos: str, coeficientes) -> Optional[int]:
    suma = sum(int(d) * c for d, c in zip(digitos, coeficientes))
    residuo = suma % 11
    if residuo == 0:
        return 0
    digito = 11 - residuo
    # residuo 1 daría 10: no existe RUC con ese verificador
    return None if digito == 10 else digito


def validar_cedula(cedula: str) -> bool:
    """
    Cédula: 10 dígitos, provincia 01-24 (o 30), tercer dígito < 6 y
    verificador módulo 10.
    """
    valor = (cedula or "").strip()
    if not re.fullmatch(r"\d{10}", valor):
        return False
    if not _provincia_valida(valor) or int(valor[2]) >= 6:
        return False
    return _digito_modulo10(valor[:9]) == int(valor[9])


def validar_ruc(ruc: str) -> bool:
    """
    RUC de 13 dígitos según el tercer dígito:

    - 0-5 persona natural: cédula válida + establecimiento (3 dígitos != 000).
    - 6 sociedad pública: módulo 11 sobre 8 dígitos, verificador en la
      posición 9 y sufijo de 4 dígitos != 0000.
    - 9 sociedad privada / extranjeros: módulo 11 sobre 9 dígitos,
      verificador en la posición 10 y sufijo != 000.
    """
    valor = (ruc or "").strip()
    if not re.fullmatch(r"\d{13}", valor):
        return False
    if not _provincia_valida(valor):
        return False

    tercero = int(valor[2])
    if tercero < 6:
        return validar_cedula(valor[:10]) and valor[10:] != "000"
    if tercero == 6:
        return (
            _digito_modulo11(valor[:8], COEFICIENTES_PUBLICA) == int(valor[8])
            and valor[9:] != "0000"
        )
    if tercero == 9:
        return (
            _digito_modulo11(valor[:9], COEFICIENTES_PRIVADA) == int(valor[9])
            and valor[10:] != "000"
        )
    return False


def validar_identificacion(tipo: str, identificacion: str) -> Optional[str]:
    """
    Valida la identificación del comprador según su tipo.

    Devuelve None si es válida o el mensaje de error en caso contrario.
    """
    valor = (identificacion or "").strip()
    if tipo == TIPO_RUC:
        return None if validar_ruc(valor) else "RUC inválido."
    if tipo == TIPO_CEDULA:
        return None if validar_cedula(valor) else "Cédula inválida."
    if tipo == TIPO_CONSUMIDOR_FINAL:
        if valor != CONSUMIDOR_FINAL:
            return f"Consumidor final debe usar la identificación {CONSUMIDOR_FINAL}."
        return None
    if tipo in (TIPO_PASAPORTE, TIPO_EXTERIOR):
        if not valor or len(valor) > 20:
            return "La identificación debe tener entre 1 y 20 caracteres."
        return None
    return f"Tipo de identificación no soportado: {tipo!r}."


def validar_forma_pago(codigo: str) -> bool:
    """Forma de pago SRI: 01-21."""
    return bool(re.fullmatch(r"0[1-9]|1[0-9]|2[01]", (codigo or "").strip()))


def validar_codigo_pais(codigo: str) -> bool:
    return bool(re.fullmatch(r"\d{3}", (codigo or "").strip()))


def validar_incoterm(incoterm: str) -> bool:
    return bool(re.fullmatch(r"[A-Z]{1,10}", (incoterm or "").strip()))
