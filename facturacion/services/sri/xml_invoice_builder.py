# facturacion/services/sri/xml_invoice_builder.py
# -*- coding: utf-8 -*-
"""
Constructor de la factura electrónica SRI (esquema factura 2.1.0).

Uso típico:

    xml = (
        InvoiceBuilder()
        .set_header(emisor, secuencial=1)
        .set_body(fecha_emision=date.today(), comprador=comprador)
        .add_line_item("P001", "Servicio", 1, "10.00", impuestos=[IVA_15])
        .set_totals()
        .build()
    )
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from facturacion.services.sri.errors import InvalidFieldWidth, MissingRequiredField
from facturacion.services.sri.nodes import Campos, Node, Object, grupo, objeto
from facturacion.services.sri.xml_builder import (
    Comprador,
    DocumentBuilder,
    Numero,
    _opcional_dinero,
    _texto,
    formatear_dinero,
    formatear_fecha,
    parse_fecha,
    redondear,
)

logger = logging.getLogger("facturacion.sri")

FACTURA_CAMPOS: Campos = (
    ("infoTributaria", "info_tributaria"),
    ("infoFactura", "info_factura"),
    ("detalles", "detalles"),
    ("reembolsos", "reembolsos"),
    ("retenciones", "retenciones"),
    ("infoSustitutivaGuiaRemision", "guia_sustitutiva"),
    ("otrosRubrosTerceros", "rubros_terceros"),
    ("tipoNegociable", "tipo_negociable"),
    ("maquinaFiscal", "maquina_fiscal"),
    ("infoAdicional", "info_adicional"),
)

INFO_FACTURA_CAMPOS: Campos = (
    ("fechaEmision", "fecha_emision"),
    ("dirEstablecimiento", "dir_establecimiento"),
    ("contribuyenteEspecial", "contribuyente_especial"),
    ("obligadoContabilidad", "obligado_contabilidad"),
    ("comercioExterior", "comercio_exterior"),
    ("incoTermFactura", "inco_term_factura"),
    ("lugarIncoTerm", "lugar_inco_term"),
    ("paisOrigen", "pais_origen"),
    ("puertoEmbarque", "puerto_embarque"),
    ("puertoDestino", "puerto_destino"),
    ("paisDestino", "pais_destino"),
    ("paisAdquisicion", "pais_adquisicion"),
    ("tipoIdentificacionComprador", "tipo_identificacion_comprador"),
    ("guiaRemision", "guia_remision"),
    ("razonSocialComprador", "razon_social_comprador"),
    ("identificacionComprador", "identificacion_comprador"),
    ("direccionComprador", "direccion_comprador"),
    ("totalSinImpuestos", "total_sin_impuestos"),
    ("totalSubsidio", "total_subsidio"),
    ("incoTermTotalSinImpuestos", "inco_term_total_sin_impuestos"),
    ("totalDescuento", "total_descuento"),
    ("codDocReembolso", "cod_doc_reembolso"),
    ("totalComprobantesReembolso", "total_comprobantes_reembolso"),
    ("totalBaseImponibleReembolso", "total_base_imponible_reembolso"),
    ("totalImpuestoReembolso", "total_impuesto_reembolso"),
    ("totalConImpuestos", "total_con_impuestos"),
    ("compensaciones", "compensaciones"),
    ("propina", "propina"),
    ("fleteInternacional", "flete_internacional"),
    ("seguroInternacional", "seguro_internacional"),
    ("gastosAduaneros", "gastos_aduaneros"),
    ("gastosTransporteOtros", "gastos_transporte_otros"),
    ("importeTotal", "importe_total"),
    ("moneda", "moneda"),
    ("placa", "placa"),
    ("pagos", "pagos"),
    ("valorRetIva", "valor_ret_iva"),
    ("valorRetRenta", "valor_ret_renta"),
)

DETALLE_FACTURA_CAMPOS: Campos = (
    ("codigoPrincipal", "codigo"),
    ("codigoAuxiliar", "codigo_auxiliar"),
    ("descripcion", "descripcion"),
    ("unidadMedida", "unidad_medida"),
    ("cantidad", "cantidad"),
    ("precioUnitario", "precio_unitario"),
    ("precioSinSubsidio", "precio_sin_subsidio"),
    ("descuento", "descuento"),
    ("precioTotalSinImpuesto", "precio_total_sin_impuesto"),
    ("detallesAdicionales", "detalles_adicionales"),
    ("impuestos", "impuestos"),
)

TOTAL_IMPUESTO_FACTURA_CAMPOS: Campos = (
    ("codigo", "codigo"),
    ("codigoPorcentaje", "codigo_porcentaje"),
    ("descuentoAdicional", "descuento_adicional"),
    ("baseImponible", "base_imponible"),
    ("tarifa", "tarifa"),
    ("valor", "valor"),
    ("valorDevolucionIva", "valor_devolucion_iva"),
)

PAGO_CAMPOS: Campos = (
    ("formaPago", "forma_pago"),
    ("total", "total"),
    ("plazo", "plazo"),
    ("unidadTiempo", "unidad_tiempo"),
)

RETENCION_CAMPOS: Campos = (
    ("codigo", "codigo"),
    ("codigoPorcentaje", "codigo_porcentaje"),
    ("tarifa", "tarifa"),
    ("valor", "valor"),
)

REEMBOLSO_DETALLE_CAMPOS: Campos = (
    ("tipoIdentificacionProveedorReembolso", "tipo_identificacion_proveedor"),
    ("identificacionProveedorReembolso", "identificacion_proveedor"),
    ("codPaisPagoProveedorReembolso", "cod_pais_pago_proveedor"),
    ("tipoProveedorReembolso", "tipo_proveedor"),
    ("codDocReembolso", "cod_doc"),
    ("estabDocReembolso", "estab"),
    ("ptoEmiDocReembolso", "pto_emi"),
    ("secuencialDocReembolso", "secuencial"),
    ("fechaEmisionDocReembolso", "fecha_emision"),
    ("numeroautorizacionDocReemb", "numero_autorizacion"),
    ("detalleImpuestos", "detalle_impuestos"),
)

REEMBOLSO_IMPUESTO_CAMPOS: Campos = (
    ("codigo", "codigo"),
    ("codigoPorcentaje", "codigo_porcentaje"),
    ("tarifa", "tarifa"),
    ("baseImponibleReembolso", "base_imponible"),
    ("impuestoReembolso", "valor"),
)

GUIA_SUSTITUTIVA_CAMPOS: Campos = (
    ("dirPartida", "dir_partida"),
    ("dirDestinatario", "dir_destinatario"),
    ("fechaIniTransporte", "fecha_ini_transporte"),
    ("fechaFinTransporte", "fecha_fin_transporte"),
    ("razonSocialTransportista", "razon_social_transportista"),
    ("tipoIdentificacionTransportista", "tipo_identificacion_transportista"),
    ("rucTransportista", "ruc_transportista"),
    ("placa", "placa"),
    ("destinos", "destinos"),
)

DESTINO_CAMPOS: Campos = (
    ("motivoTraslado", "motivo_traslado"),
    ("docAduaneroUnico", "doc_aduanero_unico"),
    ("codEstabDestino", "cod_estab_destino"),
    ("ruta", "ruta"),
)

RUBRO_CAMPOS: Campos = (
    ("concepto", "concepto"),
    ("total", "total"),
)

GUIA_REMISION_RE = re.compile(r"^\d{3}-\d{3}-\d{9}$")


class InvoiceBuilder(DocumentBuilder):
    """
    Factura (codDoc 01) versión 2.1.0.
    """

    ROOT_TAG = "factura"
    VERSION = "2.1.0"
    COD_DOC = "01"
    TIPO = "factura"
    INFO_TAG = "infoFactura"

    DETALLE_CAMPOS = DETALLE_FACTURA_CAMPOS
    TOTAL_IMPUESTO_CAMPOS = TOTAL_IMPUESTO_FACTURA_CAMPOS

    def __init__(self) -> None:
        super().__init__()
        self._comercio_exterior: Dict[str, Any] = {}
        self._reembolso: Dict[str, Any] = {}
        self._reembolso_detalles: List[Object] = []
        self._retenciones: List[Object] = []
        self._guia_sustitutiva: Optional[Object] = None
        self._rubros_terceros: List[Object] = []
        self._tipo_negociable: Optional[Object] = None

    # -------------------------
    # infoFactura
    # -------------------------

    def set_body(
        self,
        fecha_emision: Union[date, datetime, str],
        comprador: Comprador,
        dir_establecimiento: Optional[str] = None,
        guia_remision: Optional[str] = None,
        placa: Optional[str] = None,
    ) -> "InvoiceBuilder":
        self._fecha_emision = parse_fecha(fecha_emision)
        self._comprador = comprador

        guia = _texto(guia_remision)
        if guia is not None and not GUIA_REMISION_RE.match(guia):
            raise InvalidFieldWidth("guiaRemision", "formato EEE-PPP-#########", guia_remision)

        self._info.update(
            {
                "dir_establecimiento": _texto(dir_establecimiento),
                "guia_remision": guia,
                "placa": _texto(placa),
            }
        )
        return self

    def set_totals(
        self,
        total_sin_impuestos: Optional[Numero] = None,
        total_descuento: Optional[Numero] = None,
        importe_total: Optional[Numero] = None,
        propina: Numero = 0,
        impuestos: Optional[Iterable[Mapping[str, Any]]] = None,
        pagos: Optional[Iterable[Mapping[str, Any]]] = None,
        total_subsidio: Optional[Numero] = None,
        moneda: str = "DOLAR",
        valor_ret_iva: Optional[Numero] = None,
        valor_ret_renta: Optional[Numero] = None,
    ) -> "InvoiceBuilder":
        """
        Totales de la factura. Lo que no se entrega se calcula desde las líneas
        al momento de build(): totalSinImpuestos, totalDescuento,
        totalConImpuestos (agregado por codigo/codigoPorcentaje), importeTotal
        y un único pago 01 (sin utilización del sistema financiero).
        """
        self._totales = {
            "total_sin_impuestos": _opcional_dinero(total_sin_impuestos),
            "total_descuento": _opcional_dinero(total_descuento),
            "importe_total": _opcional_dinero(importe_total),
            "propina": formatear_dinero(propina or 0, "propina"),
            "impuestos": list(impuestos) if impuestos is not None else None,
            "pagos": [self._pago(p) for p in pagos] if pagos is not None else None,
            "total_subsidio": _opcional_dinero(total_subsidio),
            "moneda": _texto(moneda) or "DOLAR",
            "valor_ret_iva": _opcional_dinero(valor_ret_iva),
            "valor_ret_renta": _opcional_dinero(valor_ret_renta),
        }
        return self

    @staticmethod
    def _pago(pago: Mapping[str, Any]) -> Object:
        forma_pago = _texto(pago.get("forma_pago"))
        if forma_pago is None:
            raise MissingRequiredField("formaPago", "pago")
        plazo = pago.get("plazo")
        return objeto(
            "pago",
            PAGO_CAMPOS,
            {
                "forma_pago": forma_pago.zfill(2),
                "total": formatear_dinero(pago.get("total", 0), "total"),
                "plazo": str(plazo) if plazo not in (None, "") else None,
                "unidad_tiempo": (_texto(pago.get("unidad_tiempo")) or "dias")
                if plazo not in (None, "")
                else None,
            },
        )

    # -------------------------
    # Extensiones de la factura 2.1.0
    # -------------------------

    def set_foreign_trade(
        self,
        inco_term_factura: str,
        lugar_inco_term: str,
        pais_origen: str,
        puerto_embarque: str,
        puerto_destino: str,
        pais_destino: str,
        pais_adquisicion: str,
        inco_term_total_sin_impuestos: Optional[str] = None,
        flete_internacional: Optional[Numero] = None,
        seguro_internacional: Optional[Numero] = None,
        gastos_aduaneros: Optional[Numero] = None,
        gastos_transporte_otros: Optional[Numero] = None,
    ) -> "InvoiceBuilder":
        """Exportación: marca comercioExterior=EXPORTADOR y los incoterms."""
        self._comercio_exterior = {
            "comercio_exterior": "EXPORTADOR",
            "inco_term_factura": _texto(inco_term_factura),
            "lugar_inco_term": _texto(lugar_inco_term),
            "pais_origen": _texto(pais_origen),
            "puerto_embarque": _texto(puerto_embarque),
            "puerto_destino": _texto(puerto_destino),
            "pais_destino": _texto(pais_destino),
            "pais_adquisicion": _texto(pais_adquisicion),
            "inco_term_total_sin_impuestos": _texto(inco_term_total_sin_impuestos),
            "flete_internacional": _opcional_dinero(flete_internacional),
            "seguro_internacional": _opcional_dinero(seguro_internacional),
            "gastos_aduaneros": _opcional_dinero(gastos_aduaneros),
            "gastos_transporte_otros": _opcional_dinero(gastos_transporte_otros),
        }
        return self

    def set_refund(
        self,
        total_comprobantes_reembolso: Numero,
        total_base_imponible_reembolso: Numero,
        total_impuesto_reembolso: Numero,
        cod_doc_reembolso: str = "41",
    ) -> "InvoiceBuilder":
        self._reembolso = {
            "cod_doc_reembolso": _texto(cod_doc_reembolso),
            "total_comprobantes_reembolso": formatear_dinero(total_comprobantes_reembolso),
            "total_base_imponible_reembolso": formatear_dinero(total_base_imponible_reembolso),
            "total_impuesto_reembolso": formatear_dinero(total_impuesto_reembolso),
        }
        return self

    def add_refund_detail(
        self,
        tipo_identificacion_proveedor: str,
        identificacion_proveedor: str,
        cod_pais_pago_proveedor: str,
        tipo_proveedor: str,
        cod_doc: str,
        estab: str,
        pto_emi: str,
        secuencial: str,
        fecha_emision: Union[date, datetime, str],
        numero_autorizacion: str,
        impuestos: Iterable[Mapping[str, Any]],
    ) -> "InvoiceBuilder":
        detalle_impuestos = [
            objeto(
                "detalleImpuesto",
                REEMBOLSO_IMPUESTO_CAMPOS,
                {
                    "codigo": _texto(i.get("codigo")),
                    "codigo_porcentaje": _texto(i.get("codigo_porcentaje")),
                    "tarifa": formatear_dinero(i.get("tarifa", 0)),
                    "base_imponible": formatear_dinero(i.get("base_imponible", 0)),
                    "valor": formatear_dinero(i.get("valor", 0)),
                },
            )
            for i in impuestos
        ]
        if not detalle_impuestos:
            raise MissingRequiredField("detalleImpuesto", "reembolsoDetalle")

        self._reembolso_detalles.append(
            objeto(
                "reembolsoDetalle",
                REEMBOLSO_DETALLE_CAMPOS,
                {
                    "tipo_identificacion_proveedor": _texto(tipo_identificacion_proveedor),
                    "identificacion_proveedor": _texto(identificacion_proveedor),
                    "cod_pais_pago_proveedor": _texto(cod_pais_pago_proveedor),
                    "tipo_proveedor": _texto(tipo_proveedor),
                    "cod_doc": _texto(cod_doc),
                    "estab": str(estab).zfill(3),
                    "pto_emi": str(pto_emi).zfill(3),
                    "secuencial": str(secuencial).zfill(9),
                    "fecha_emision": formatear_fecha(fecha_emision, "fechaEmisionDocReembolso"),
                    "numero_autorizacion": _texto(numero_autorizacion),
                    "detalle_impuestos": grupo("detalleImpuestos", detalle_impuestos),
                },
            )
        )
        return self

    def add_withholding(
        self,
        codigo: str,
        codigo_porcentaje: str,
        tarifa: Numero,
        valor: Numero,
    ) -> "InvoiceBuilder":
        self._retenciones.append(
            objeto(
                "retencion",
                RETENCION_CAMPOS,
                {
                    "codigo": _texto(codigo),
                    "codigo_porcentaje": _texto(codigo_porcentaje),
                    "tarifa": formatear_dinero(tarifa, "tarifa"),
                    "valor": formatear_dinero(valor, "valor"),
                },
            )
        )
        return self

    def set_substitute_waybill(
        self,
        dir_partida: str,
        dir_destinatario: str,
        fecha_ini_transporte: Union[date, datetime, str],
        fecha_fin_transporte: Union[date, datetime, str],
        razon_social_transportista: str,
        tipo_identificacion_transportista: str,
        ruc_transportista: str,
        placa: str,
        destinos: Iterable[Mapping[str, Any]],
    ) -> "InvoiceBuilder":
        destinos_nodes = [
            objeto(
                "destino",
                DESTINO_CAMPOS,
                {
                    "motivo_traslado": _texto(d.get("motivo_traslado")),
                    "doc_aduanero_unico": _texto(d.get("doc_aduanero_unico")),
                    "cod_estab_destino": _texto(d.get("cod_estab_destino")),
                    "ruta": _texto(d.get("ruta")),
                },
            )
            for d in destinos
        ]
        if not destinos_nodes:
            raise MissingRequiredField("destino", "infoSustitutivaGuiaRemision")

        self._guia_sustitutiva = objeto(
            "infoSustitutivaGuiaRemision",
            GUIA_SUSTITUTIVA_CAMPOS,
            {
                "dir_partida": _texto(dir_partida),
                "dir_destinatario": _texto(dir_destinatario),
                "fecha_ini_transporte": formatear_fecha(fecha_ini_transporte, "fechaIniTransporte"),
                "fecha_fin_transporte": formatear_fecha(fecha_fin_transporte, "fechaFinTransporte"),
                "razon_social_transportista": _texto(razon_social_transportista),
                "tipo_identificacion_transportista": _texto(tipo_identificacion_transportista),
                "ruc_transportista": _texto(ruc_transportista),
                "placa": _texto(placa),
                "destinos": grupo("destinos", destinos_nodes),
            },
        )
        return self

    def add_third_party_item(self, concepto: str, total: Numero) -> "InvoiceBuilder":
        if _texto(concepto) is None:
            raise MissingRequiredField("concepto", "rubro")
        self._rubros_terceros.append(
            objeto(
                "rubro",
                RUBRO_CAMPOS,
                {"concepto": _texto(concepto), "total": formatear_dinero(total, "total")},
            )
        )
        return self

    def set_negotiable(self, correo: str) -> "InvoiceBuilder":
        if _texto(correo) is None:
            raise MissingRequiredField("correo", "tipoNegociable")
        self._tipo_negociable = objeto(
            "tipoNegociable", (("correo", "correo"),), {"correo": _texto(correo)}
        )
        return self

    # -------------------------
    # Ensamblado
    # -------------------------

    def _info_factura(self) -> Object:
        emisor = self._emisor
        comprador = self._comprador
        totales = self._totales
        impuestos = totales["impuestos"]

        total_sin_impuestos = totales["total_sin_impuestos"] or formatear_dinero(self._subtotal_lineas)
        total_descuento = totales["total_descuento"] or formatear_dinero(self._descuento_lineas)

        importe_total = totales["importe_total"]
        if importe_total is None:
            importe_total = formatear_dinero(
                redondear(total_sin_impuestos)
                + self._suma_impuestos(impuestos)
                + redondear(totales["propina"])
            )

        pagos = totales["pagos"]
        if pagos is None:
            pagos = [self._pago({"forma_pago": "01", "total": importe_total})]

        valores: Dict[str, Any] = {
            "fecha_emision": formatear_fecha(self._fecha_emision),
            "dir_establecimiento": self._info.get("dir_establecimiento")
            or emisor.dir_establecimiento
            or emisor.dir_matriz,
            "contribuyente_especial": emisor.contribuyente_especial,
            "obligado_contabilidad": "SI" if emisor.obligado_contabilidad else "NO",
            "tipo_identificacion_comprador": comprador.tipo_identificacion,
            "guia_remision": self._info.get("guia_remision"),
            "razon_social_comprador": comprador.razon_social,
            "identificacion_comprador": comprador.identificacion,
            "direccion_comprador": _texto(comprador.direccion),
            "total_sin_impuestos": total_sin_impuestos,
            "total_subsidio": totales["total_subsidio"],
            "total_descuento": total_descuento,
            "total_con_impuestos": grupo("totalConImpuestos", self._total_impuesto_nodes(impuestos)),
            "compensaciones": grupo("compensaciones", self._compensaciones),
            "propina": totales["propina"],
            "importe_total": importe_total,
            "moneda": totales["moneda"],
            "placa": self._info.get("placa"),
            "pagos": grupo("pagos", pagos),
            "valor_ret_iva": totales["valor_ret_iva"],
            "valor_ret_renta": totales["valor_ret_renta"],
        }
        valores.update(self._comercio_exterior)
        valores.update(self._reembolso)
        return objeto("infoFactura", INFO_FACTURA_CAMPOS, valores)

    def _documento(self, clave_acceso: str) -> Node:
        if self._reembolso_detalles and not self._reembolso:
            raise MissingRequiredField("codDocReembolso (set_refund)", "infoFactura")

        return objeto(
            self.ROOT_TAG,
            FACTURA_CAMPOS,
            {
                "info_tributaria": self._info_tributaria(clave_acceso),
                "info_factura": self._info_factura(),
                "detalles": grupo("detalles", self._detalles),
                "reembolsos": grupo("reembolsos", self._reembolso_detalles),
                "retenciones": grupo("retenciones", self._retenciones),
                "guia_sustitutiva": self._guia_sustitutiva,
                "rubros_terceros": grupo("otrosRubrosTerceros", self._rubros_terceros),
                "tipo_negociable": self._tipo_negociable,
                "maquina_fiscal": self._maquina_fiscal,
                "info_adicional": self._info_adicional_node(),
            },
            attrs=(("id", "comprobante"), ("version", self.VERSION)),
        )
