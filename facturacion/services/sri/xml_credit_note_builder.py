# facturacion/services/sri/xml_credit_note_builder.py
# -*- coding: utf-8 -*-
"""
Constructor de la nota de crédito electrónica SRI (esquema notaCredito 1.1.0).

Estructura:

<notaCredito id="comprobante" version="1.1.0">
  <infoTributaria>...</infoTributaria>
  <infoNotaCredito>...</infoNotaCredito>
  <detalles>...</detalles>
  <maquinaFiscal>...</maquinaFiscal>   (opcional)
  <infoAdicional>...</infoAdicional>   (opcional)
</notaCredito>
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Optional, Union

from facturacion.services.sri.errors import InvalidFieldWidth, MissingRequiredField
from facturacion.services.sri.nodes import Campos, Node, Object, grupo, objeto
from facturacion.services.sri.xml_builder import (
    Comprador,
    DocumentBuilder,
    Numero,
    _opcional_dinero,
    _texto,
    _texto_limitado,
    formatear_dinero,
    formatear_fecha,
    parse_fecha,
    redondear,
)

logger = logging.getLogger("facturacion.sri")

NOTA_CREDITO_CAMPOS: Campos = (
    ("infoTributaria", "info_tributaria"),
    ("infoNotaCredito", "info_nota_credito"),
    ("detalles", "detalles"),
    ("maquinaFiscal", "maquina_fiscal"),
    ("infoAdicional", "info_adicional"),
)

INFO_NOTA_CREDITO_CAMPOS: Campos = (
    ("fechaEmision", "fecha_emision"),
    ("dirEstablecimiento", "dir_establecimiento"),
    ("tipoIdentificacionComprador", "tipo_identificacion_comprador"),
    ("razonSocialComprador", "razon_social_comprador"),
    ("identificacionComprador", "identificacion_comprador"),
    ("contribuyenteEspecial", "contribuyente_especial"),
    ("obligadoContabilidad", "obligado_contabilidad"),
    ("rise", "rise"),
    ("codDocModificado", "cod_doc_modificado"),
    ("numDocModificado", "num_doc_modificado"),
    ("fechaEmisionDocSustento", "fecha_emision_doc_sustento"),
    ("totalSinImpuestos", "total_sin_impuestos"),
    ("compensaciones", "compensaciones"),
    ("valorModificacion", "valor_modificacion"),
    ("moneda", "moneda"),
    ("totalConImpuestos", "total_con_impuestos"),
    ("motivo", "motivo"),
)

DETALLE_NOTA_CREDITO_CAMPOS: Campos = (
    ("codigoInterno", "codigo"),
    ("codigoAdicional", "codigo_auxiliar"),
    ("descripcion", "descripcion"),
    ("cantidad", "cantidad"),
    ("precioUnitario", "precio_unitario"),
    ("descuento", "descuento"),
    ("precioTotalSinImpuesto", "precio_total_sin_impuesto"),
    ("detallesAdicionales", "detalles_adicionales"),
    ("impuestos", "impuestos"),
)

TOTAL_IMPUESTO_NOTA_CREDITO_CAMPOS: Campos = (
    ("codigo", "codigo"),
    ("codigoPorcentaje", "codigo_porcentaje"),
    ("baseImponible", "base_imponible"),
    ("valor", "valor"),
    ("valorDevolucionIva", "valor_devolucion_iva"),
)

NUM_DOC_MODIFICADO_RE = re.compile(r"^\d{3}-\d{3}-\d{9}$")


class CreditNoteBuilder(DocumentBuilder):
    """
    Nota de crédito (codDoc 04) versión 1.1.0.

    Además de la cabecera y los detalles exige la referencia al documento
    modificado (codDocModificado, numDocModificado, fechaEmisionDocSustento)
    y el motivo.
    """

    ROOT_TAG = "notaCredito"
    VERSION = "1.1.0"
    COD_DOC = "04"
    TIPO = "nota_credito"
    INFO_TAG = "infoNotaCredito"

    DETALLE_CAMPOS = DETALLE_NOTA_CREDITO_CAMPOS
    TOTAL_IMPUESTO_CAMPOS = TOTAL_IMPUESTO_NOTA_CREDITO_CAMPOS

    def set_body(
        self,
        fecha_emision: Union[date, datetime, str],
        comprador: Comprador,
        num_doc_modificado: str,
        fecha_emision_doc_sustento: Union[date, datetime, str],
        motivo: str,
        cod_doc_modificado: str = "01",
        rise: Optional[str] = None,
        dir_establecimiento: Optional[str] = None,
    ) -> "CreditNoteBuilder":
        self._fecha_emision = parse_fecha(fecha_emision)
        self._comprador = comprador

        num_doc = _texto(num_doc_modificado)
        if num_doc is not None and not NUM_DOC_MODIFICADO_RE.match(num_doc):
            raise InvalidFieldWidth("numDocModificado", "formato EEE-PPP-#########", num_doc_modificado)

        cod_doc = _texto(cod_doc_modificado)
        if cod_doc is not None and not re.fullmatch(r"\d{2}", cod_doc):
            raise InvalidFieldWidth("codDocModificado", "exactamente 2 dígitos", cod_doc_modificado)

        self._info.update(
            {
                "cod_doc_modificado": cod_doc,
                "num_doc_modificado": num_doc,
                "fecha_emision_doc_sustento": (
                    formatear_fecha(fecha_emision_doc_sustento, "fechaEmisionDocSustento")
                    if fecha_emision_doc_sustento not in (None, "")
                    else None
                ),
                "motivo": _texto_limitado(motivo, "motivo"),
                "rise": _texto(rise),
                "dir_establecimiento": _texto(dir_establecimiento),
            }
        )
        return self

    def set_totals(
        self,
        total_sin_impuestos: Optional[Numero] = None,
        valor_modificacion: Optional[Numero] = None,
        impuestos: Optional[Iterable[Mapping[str, Any]]] = None,
        moneda: str = "DOLAR",
    ) -> "CreditNoteBuilder":
        """
        valorModificacion por defecto = totalSinImpuestos + suma de impuestos.
        """
        self._totales = {
            "total_sin_impuestos": _opcional_dinero(total_sin_impuestos),
            "valor_modificacion": _opcional_dinero(valor_modificacion),
            "impuestos": list(impuestos) if impuestos is not None else None,
            "moneda": _texto(moneda) or "DOLAR",
        }
        return self

    def _validar(self) -> None:
        super()._validar()
        for clave, tag in (
            ("cod_doc_modificado", "codDocModificado"),
            ("num_doc_modificado", "numDocModificado"),
            ("fecha_emision_doc_sustento", "fechaEmisionDocSustento"),
            ("motivo", "motivo"),
        ):
            if not self._info.get(clave):
                raise MissingRequiredField(tag, self.INFO_TAG)

    def _info_nota_credito(self) -> Object:
        emisor = self._emisor
        comprador = self._comprador
        totales = self._totales
        impuestos = totales["impuestos"]

        total_sin_impuestos = totales["total_sin_impuestos"] or formatear_dinero(self._subtotal_lineas)
        valor_modificacion = totales["valor_modificacion"]
        if valor_modificacion is None:
            valor_modificacion = formatear_dinero(
                redondear(total_sin_impuestos) + self._suma_impuestos(impuestos)
            )

        return objeto(
            "infoNotaCredito",
            INFO_NOTA_CREDITO_CAMPOS,
            {
                "fecha_emision": formatear_fecha(self._fecha_emision),
                "dir_establecimiento": self._info.get("dir_establecimiento")
                or emisor.dir_establecimiento
                or emisor.dir_matriz,
                "tipo_identificacion_comprador": comprador.tipo_identificacion,
                "razon_social_comprador": comprador.razon_social,
                "identificacion_comprador": comprador.identificacion,
                "contribuyente_especial": emisor.contribuyente_especial,
                "obligado_contabilidad": "SI" if emisor.obligado_contabilidad else "NO",
                "rise": self._info.get("rise"),
                "cod_doc_modificado": self._info["cod_doc_modificado"],
                "num_doc_modificado": self._info["num_doc_modificado"],
                "fecha_emision_doc_sustento": self._info["fecha_emision_doc_sustento"],
                "total_sin_impuestos": total_sin_impuestos,
                "compensaciones": grupo("compensaciones", self._compensaciones),
                "valor_modificacion": valor_modificacion,
                "moneda": totales["moneda"],
                "total_con_impuestos": grupo("totalConImpuestos", self._total_impuesto_nodes(impuestos)),
                "motivo": self._info["motivo"],
            },
        )

    def _documento(self, clave_acceso: str) -> Node:
        return objeto(
            self.ROOT_TAG,
            NOTA_CREDITO_CAMPOS,
            {
                "info_tributaria": self._info_tributaria(clave_acceso),
                "info_nota_credito": self._info_nota_credito(),
                "detalles": grupo("detalles", self._detalles),
                "maquina_fiscal": self._maquina_fiscal,
                "info_adicional": self._info_adicional_node(),
            },
            attrs=(("id", "comprobante"), ("version", self.VERSION)),
        )
