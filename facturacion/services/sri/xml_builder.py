# facturacion/services/sri/xml_builder.py
# -*- coding: utf-8 -*-
"""
Base común de los constructores de XML de comprobantes SRI.

Reglas compartidas por factura y nota de crédito:

- Los números se formatean al momento de agregarlos: 2 decimales para montos,
  6 para cantidad y precio unitario, siempre con '.' y redondeo ROUND_HALF_UP.
- El orden de los elementos sale de tuplas (tag, clave) por sección, nunca
  del orden de un dict.
- Las secciones opcionales solo se emiten si tienen contenido.
- La clave de acceso se genera en build() salvo que se entregue una.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from django.conf import settings

from facturacion.services.sri.errors import (
    InvalidFieldWidth,
    MissingRequiredField,
    PreconditionError,
)
from facturacion.services.sri.nodes import (
    AttributedScalar,
    Campos,
    Node,
    Object,
    RepeatedGroup,
    grupo,
    objeto,
    to_xml_bytes,
)
from facturacion.services.sri.storage import PathLike, escribir_atomico
from facturacion.utils import (
    generar_clave_acceso,
    generar_codigo_numerico,
    validar_clave_acceso,
)

logger = logging.getLogger("facturacion.sri")

Numero = Union[Decimal, float, int, str]

DOS_DECIMALES = Decimal("0.01")
SEIS_DECIMALES = Decimal("0.000001")
CERO = Decimal("0")

RIMPE_LEYENDA = "CONTRIBUYENTE RÉGIMEN RIMPE"


# =========================
# Formato numérico / fechas
# =========================


def to_decimal(value: Numero, campo: str = "valor") -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise PreconditionError(f"{campo} no es un número válido: {value!r}") from exc


def redondear(value: Numero, precision: Decimal = DOS_DECIMALES, campo: str = "valor") -> Decimal:
    return to_decimal(value, campo).quantize(precision, rounding=ROUND_HALF_UP)


def formatear_dinero(value: Numero, campo: str = "valor") -> str:
    """Monto SRI: 2 decimales, ROUND_HALF_UP, punto decimal."""
    return format(redondear(value, DOS_DECIMALES, campo), "f")


def formatear_cantidad(value: Numero, campo: str = "cantidad") -> str:
    """Cantidad / precio unitario SRI: 6 decimales."""
    return format(redondear(value, SEIS_DECIMALES, campo), "f")


def parse_fecha(fecha: Union[date, datetime, str], campo: str = "fechaEmision") -> date:
    """
    Acepta date/datetime, 'dd/mm/aaaa' o ISO 'aaaa-mm-dd'.
    No aplica ajustes de zona horaria: la fecha del XML debe ser la misma de la clave.
    """
    if fecha is None or fecha == "":
        raise MissingRequiredField(campo)
    if isinstance(fecha, datetime):
        return fecha.date()
    if isinstance(fecha, date):
        return fecha
    texto = str(fecha).strip()
    for formato in ("%d/%m/%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(texto, formato).date()
        except ValueError:
            continue
    raise InvalidFieldWidth(campo, "formato dd/mm/aaaa", fecha)


def formatear_fecha(fecha: Union[date, datetime, str], campo: str = "fechaEmision") -> str:
    return parse_fecha(fecha, campo).strftime("%d/%m/%Y")


def _digitos(campo: str, valor: Any, longitud: int) -> str:
    texto = str(valor or "").strip()
    if not re.fullmatch(rf"\d{{{longitud}}}", texto):
        raise InvalidFieldWidth(campo, f"exactamente {longitud} dígito(s)", valor)
    return texto


def _texto(valor: Any) -> Optional[str]:
    if valor is None:
        return None
    texto = str(valor).strip()
    return texto or None


TEXTO_MAXIMO = 300


def _texto_limitado(valor: Any, campo: str, maximo: int = TEXTO_MAXIMO) -> Optional[str]:
    """Como _texto, pero un valor más largo que `maximo` es un InvalidFieldWidth."""
    texto = _texto(valor)
    if texto is not None and len(texto) > maximo:
        raise InvalidFieldWidth(campo, f"máximo {maximo} caracteres", f"{texto[:40]}... ({len(texto)})")
    return texto


# =========================
# Identidad del emisor / comprador
# =========================


@dataclass(frozen=True)
class Emisor:
    """
    Datos del contribuyente emisor. Se valida el ancho de los campos fijos.
    """

    ruc: str
    razon_social: str
    dir_matriz: str
    estab: str
    pto_emi: str
    ambiente: str = "1"
    tipo_emision: str = "1"
    nombre_comercial: Optional[str] = None
    dir_establecimiento: Optional[str] = None
    contribuyente_especial: Optional[str] = None
    obligado_contabilidad: bool = False
    agente_retencion: Optional[str] = None
    contribuyente_rimpe: Optional[str] = None

    def __post_init__(self) -> None:
        _digitos("ruc", self.ruc, 13)
        _digitos("estab", self.estab, 3)
        _digitos("ptoEmi", self.pto_emi, 3)
        if self.ambiente not in ("1", "2"):
            raise InvalidFieldWidth("ambiente", "1 (pruebas) o 2 (producción)", self.ambiente)
        _digitos("tipoEmision", self.tipo_emision, 1)
        if not _texto(self.razon_social):
            raise MissingRequiredField("razonSocial", "infoTributaria")
        if not _texto(self.dir_matriz):
            raise MissingRequiredField("dirMatriz", "infoTributaria")

    @property
    def serie(self) -> str:
        return f"{self.estab}{self.pto_emi}"

    @classmethod
    def from_settings(cls) -> "Emisor":
        """
        Construye el emisor desde settings (SRI_EMISOR_*, SRI_ESTABLECIMIENTO, ...).
        """
        rimpe = getattr(settings, "SRI_EMISOR_RIMPE", False)
        return cls(
            ruc=str(getattr(settings, "SRI_EMISOR_RUC", "")),
            razon_social=getattr(settings, "SRI_EMISOR_RAZON_SOCIAL", ""),
            nombre_comercial=getattr(settings, "SRI_EMISOR_NOMBRE_COMERCIAL", None) or None,
            dir_matriz=getattr(settings, "SRI_EMISOR_DIR_MATRIZ", ""),
            dir_establecimiento=getattr(settings, "SRI_EMISOR_DIR_ESTABLECIMIENTO", None) or None,
            estab=str(getattr(settings, "SRI_ESTABLECIMIENTO", "001")).zfill(3),
            pto_emi=str(getattr(settings, "SRI_PUNTO_EMISION", "001")).zfill(3),
            ambiente=str(getattr(settings, "SRI_AMBIENTE", "1")),
            tipo_emision=str(getattr(settings, "SRI_TIPO_EMISION", "1")),
            contribuyente_especial=getattr(settings, "SRI_EMISOR_CONTRIBUYENTE_ESPECIAL", None) or None,
            obligado_contabilidad=bool(getattr(settings, "SRI_EMISOR_OBLIGADO_CONTABILIDAD", False)),
            agente_retencion=getattr(settings, "SRI_EMISOR_AGENTE_RETENCION", None) or None,
            contribuyente_rimpe=RIMPE_LEYENDA if rimpe else None,
        )


@dataclass(frozen=True)
class Comprador:
    tipo_identificacion: str
    identificacion: str
    razon_social: str
    direccion: Optional[str] = None


# =========================
# Documento serializado
# =========================


@dataclass(frozen=True)
class SerializedDocument:
    """
    Resultado de build(): clave de acceso + tipo + bytes UTF-8 del XML.
    """

    clave_acceso: str
    tipo: str
    xml: bytes

    @property
    def texto(self) -> str:
        return self.xml.decode("utf-8")

    def save(self, path: PathLike) -> Path:
        return escribir_atomico(path, self.xml)


# =========================
# Secciones compartidas
# =========================

INFO_TRIBUTARIA_CAMPOS: Campos = (
    ("ambiente", "ambiente"),
    ("tipoEmision", "tipo_emision"),
    ("razonSocial", "razon_social"),
    ("nombreComercial", "nombre_comercial"),
    ("ruc", "ruc"),
    ("claveAcceso", "clave_acceso"),
    ("codDoc", "cod_doc"),
    ("estab", "estab"),
    ("ptoEmi", "pto_emi"),
    ("secuencial", "secuencial"),
    ("dirMatriz", "dir_matriz"),
    ("agenteRetencion", "agente_retencion"),
    ("contribuyenteRimpe", "contribuyente_rimpe"),
)

IMPUESTO_DETALLE_CAMPOS: Campos = (
    ("codigo", "codigo"),
    ("codigoPorcentaje", "codigo_porcentaje"),
    ("tarifa", "tarifa"),
    ("baseImponible", "base_imponible"),
    ("valor", "valor"),
)

COMPENSACION_CAMPOS: Campos = (
    ("codigo", "codigo"),
    ("tarifa", "tarifa"),
    ("valor", "valor"),
)

MAQUINA_FISCAL_CAMPOS: Campos = (
    ("marca", "marca"),
    ("modelo", "modelo"),
    ("serie", "serie"),
)


@dataclass(frozen=True)
class ImpuestoLinea:
    """Impuesto de una línea ya redondeado; se usa para agregar totales."""

    codigo: str
    codigo_porcentaje: str
    tarifa: Decimal
    base_imponible: Decimal
    valor: Decimal


class DocumentBuilder:
    """
    Constructor mutable de un comprobante SRI.

    Las subclases definen ROOT_TAG, VERSION, COD_DOC, TIPO, INFO_TAG y las
    tuplas de campos específicas (detalle, totalImpuesto, info del documento).
    """

    ROOT_TAG: str = ""
    VERSION: str = ""
    COD_DOC: str = ""
    TIPO: str = ""
    INFO_TAG: str = ""

    DETALLE_CAMPOS: Campos = ()
    TOTAL_IMPUESTO_CAMPOS: Campos = ()

    def __init__(self) -> None:
        self._emisor: Optional[Emisor] = None
        self._secuencial: Optional[str] = None
        self._clave_acceso: Optional[str] = None
        self._codigo_numerico: Optional[str] = None

        self._fecha_emision: Optional[date] = None
        self._comprador: Optional[Comprador] = None
        self._info: Dict[str, Any] = {}

        self._detalles: List[Object] = []
        self._impuestos_lineas: List[ImpuestoLinea] = []
        self._subtotal_lineas = Decimal("0.00")
        self._descuento_lineas = Decimal("0.00")

        self._totales: Optional[Dict[str, Any]] = None
        self._compensaciones: List[Object] = []
        self._maquina_fiscal: Optional[Object] = None
        self._info_adicional: List[AttributedScalar] = []

    # -------------------------
    # Cabecera (infoTributaria)
    # -------------------------

    def set_header(
        self,
        emisor: Emisor,
        secuencial: Union[int, str],
        clave_acceso: Optional[str] = None,
        codigo_numerico: Optional[str] = None,
    ) -> "DocumentBuilder":
        texto = str(secuencial).strip()
        if not texto.isdigit() or len(texto) > 9:
            raise InvalidFieldWidth("secuencial", "hasta 9 dígitos", secuencial)
        if clave_acceso is not None and not validar_clave_acceso(clave_acceso):
            raise InvalidFieldWidth("claveAcceso", "49 dígitos con verificador válido", clave_acceso)
        if codigo_numerico is not None:
            _digitos("codigo_numerico", codigo_numerico, 8)

        self._emisor = emisor
        self._secuencial = texto.zfill(9)
        self._clave_acceso = clave_acceso
        self._codigo_numerico = codigo_numerico
        return self

    # -------------------------
    # Detalles
    # -------------------------

    def add_line_item(
        self,
        codigo: str,
        descripcion: str,
        cantidad: Numero,
        precio_unitario: Numero,
        descuento: Numero = 0,
        impuestos: Iterable[Mapping[str, Any]] = (),
        codigo_auxiliar: Optional[str] = None,
        unidad_medida: Optional[str] = None,
        precio_sin_subsidio: Optional[Numero] = None,
        precio_total_sin_impuesto: Optional[Numero] = None,
        detalles_adicionales: Optional[Union[Mapping[str, str], Sequence[Tuple[str, str]]]] = None,
    ) -> "DocumentBuilder":
        """
        Agrega un <detalle>. Si no se entrega precio_total_sin_impuesto se
        calcula como cantidad * precioUnitario - descuento (a 2 decimales).

        En cada impuesto, base_imponible por defecto es el total de la línea
        y valor por defecto es base * tarifa / 100.
        """
        if not _texto(codigo):
            raise MissingRequiredField("codigo", "detalle")
        if not _texto(descripcion):
            raise MissingRequiredField("descripcion", "detalle")

        cantidad_q = redondear(cantidad, SEIS_DECIMALES, "cantidad")
        precio_q = redondear(precio_unitario, SEIS_DECIMALES, "precioUnitario")
        descuento_q = redondear(descuento or 0, DOS_DECIMALES, "descuento")

        if precio_total_sin_impuesto is None:
            total_q = redondear(cantidad_q * precio_q - descuento_q, DOS_DECIMALES)
        else:
            total_q = redondear(precio_total_sin_impuesto, DOS_DECIMALES, "precioTotalSinImpuesto")

        impuestos_linea = [self._impuesto_linea(imp, total_q) for imp in impuestos]
        if not impuestos_linea:
            raise MissingRequiredField("impuestos", "detalle")

        valores: Dict[str, Any] = {
            "codigo": _texto(codigo),
            "codigo_auxiliar": _texto(codigo_auxiliar),
            "descripcion": _texto(descripcion),
            "unidad_medida": _texto(unidad_medida),
            "cantidad": format(cantidad_q, "f"),
            "precio_unitario": format(precio_q, "f"),
            "precio_sin_subsidio": (
                formatear_cantidad(precio_sin_subsidio, "precioSinSubsidio")
                if precio_sin_subsidio is not None
                else None
            ),
            "descuento": format(descuento_q, "f"),
            "precio_total_sin_impuesto": format(total_q, "f"),
            "detalles_adicionales": self._detalles_adicionales(detalles_adicionales),
            "impuestos": RepeatedGroup(
                "impuestos",
                tuple(self._impuesto_linea_node(imp) for imp in impuestos_linea),
            ),
        }
        self._rechazar_campos_no_admitidos(valores, self.DETALLE_CAMPOS, "detalle")

        self._detalles.append(objeto("detalle", self.DETALLE_CAMPOS, valores))
        self._impuestos_lineas.extend(impuestos_linea)
        self._subtotal_lineas += total_q
        self._descuento_lineas += descuento_q
        return self

    def _impuesto_linea(self, imp: Mapping[str, Any], base_defecto: Decimal) -> ImpuestoLinea:
        codigo = _texto(imp.get("codigo"))
        codigo_porcentaje = _texto(imp.get("codigo_porcentaje"))
        if codigo is None:
            raise MissingRequiredField("codigo", "impuesto")
        if codigo_porcentaje is None:
            raise MissingRequiredField("codigoPorcentaje", "impuesto")

        tarifa = redondear(imp.get("tarifa", 0) or 0, DOS_DECIMALES, "tarifa")
        base_raw = imp.get("base_imponible")
        base = base_defecto if base_raw is None else redondear(base_raw, DOS_DECIMALES, "baseImponible")
        valor_raw = imp.get("valor")
        if valor_raw is None:
            valor = redondear(base * tarifa / Decimal("100"), DOS_DECIMALES)
        else:
            valor = redondear(valor_raw, DOS_DECIMALES, "valor")
        return ImpuestoLinea(codigo, codigo_porcentaje, tarifa, base, valor)

    @staticmethod
    def _impuesto_linea_node(imp: ImpuestoLinea) -> Object:
        return objeto(
            "impuesto",
            IMPUESTO_DETALLE_CAMPOS,
            {
                "codigo": imp.codigo,
                "codigo_porcentaje": imp.codigo_porcentaje,
                "tarifa": format(imp.tarifa, "f"),
                "base_imponible": format(imp.base_imponible, "f"),
                "valor": format(imp.valor, "f"),
            },
        )

    @staticmethod
    def _detalles_adicionales(
        detalles: Optional[Union[Mapping[str, str], Sequence[Tuple[str, str]]]],
    ) -> Optional[RepeatedGroup]:
        if not detalles:
            return None
        pares = detalles.items() if isinstance(detalles, Mapping) else detalles
        return grupo(
            "detallesAdicionales",
            [
                AttributedScalar("detAdicional", "", (("nombre", str(n)), ("valor", str(v))))
                for n, v in pares
            ],
        )

    @staticmethod
    def _rechazar_campos_no_admitidos(valores: Mapping[str, Any], campos: Campos, seccion: str) -> None:
        admitidos = {clave for _, clave in campos}
        sobrantes = [k for k, v in valores.items() if v not in (None, "") and k not in admitidos]
        if sobrantes:
            raise PreconditionError(f"Campos no admitidos en <{seccion}>: {', '.join(sobrantes)}")

    # -------------------------
    # Totales de impuestos
    # -------------------------

    def _total_impuesto_nodes(self, impuestos: Optional[Iterable[Mapping[str, Any]]]) -> List[Object]:
        """
        totalConImpuestos: explícito si se entregó en set_totals, si no se agrega
        por (codigo, codigoPorcentaje) a partir de los impuestos de las líneas.
        """
        filas: List[Dict[str, Any]] = []
        if impuestos is not None:
            for imp in impuestos:
                codigo = _texto(imp.get("codigo"))
                codigo_porcentaje = _texto(imp.get("codigo_porcentaje"))
                if codigo is None or codigo_porcentaje is None:
                    raise MissingRequiredField("codigo/codigoPorcentaje", "totalImpuesto")
                filas.append(
                    {
                        "codigo": codigo,
                        "codigo_porcentaje": codigo_porcentaje,
                        "descuento_adicional": _opcional_dinero(imp.get("descuento_adicional")),
                        "base_imponible": formatear_dinero(imp.get("base_imponible", 0), "baseImponible"),
                        "tarifa": _opcional_dinero(imp.get("tarifa")),
                        "valor": formatear_dinero(imp.get("valor", 0), "valor"),
                        "valor_devolucion_iva": _opcional_dinero(imp.get("valor_devolucion_iva")),
                    }
                )
        else:
            agregados: Dict[Tuple[str, str], Dict[str, Decimal]] = {}
            for imp in self._impuestos_lineas:
                key = (imp.codigo, imp.codigo_porcentaje)
                if key not in agregados:
                    agregados[key] = {"base": CERO, "valor": CERO, "tarifa": imp.tarifa}
                agregados[key]["base"] += imp.base_imponible
                agregados[key]["valor"] += imp.valor
            for (codigo, codigo_porcentaje), data in agregados.items():
                filas.append(
                    {
                        "codigo": codigo,
                        "codigo_porcentaje": codigo_porcentaje,
                        "base_imponible": formatear_dinero(data["base"]),
                        "tarifa": formatear_dinero(data["tarifa"]),
                        "valor": formatear_dinero(data["valor"]),
                    }
                )

        admitidos = {clave for _, clave in self.TOTAL_IMPUESTO_CAMPOS}
        return [
            objeto(
                "totalImpuesto",
                self.TOTAL_IMPUESTO_CAMPOS,
                {k: v for k, v in fila.items() if k in admitidos},
            )
            for fila in filas
        ]

    def _suma_impuestos(self, impuestos: Optional[Iterable[Mapping[str, Any]]]) -> Decimal:
        if impuestos is not None:
            return sum((redondear(i.get("valor", 0)) for i in impuestos), CERO)
        return sum((i.valor for i in self._impuestos_lineas), CERO)

    # -------------------------
    # Secciones opcionales comunes
    # -------------------------

    def add_additional_field(self, nombre: str, valor: str) -> "DocumentBuilder":
        """<campoAdicional nombre="...">valor</campoAdicional>, en orden de llegada."""
        nombre_t = _texto(nombre)
        if nombre_t is None:
            raise MissingRequiredField("nombre", "campoAdicional")
        valor_t = _texto_limitado(valor, f"campoAdicional[{nombre_t}]")
        if valor_t is None:
            logger.debug("campoAdicional '%s' sin valor: se omite.", nombre_t)
            return self
        self._info_adicional.append(
            AttributedScalar("campoAdicional", valor_t, (("nombre", nombre_t),))
        )
        return self

    def set_compensations(self, compensaciones: Iterable[Mapping[str, Any]]) -> "DocumentBuilder":
        self._compensaciones = [
            objeto(
                "compensacion",
                COMPENSACION_CAMPOS,
                {
                    "codigo": _texto(c.get("codigo")),
                    "tarifa": formatear_dinero(c.get("tarifa", 0), "tarifa"),
                    "valor": formatear_dinero(c.get("valor", 0), "valor"),
                },
            )
            for c in compensaciones
        ]
        return self

    def set_fiscal_machine(self, marca: str, modelo: str, serie: str) -> "DocumentBuilder":
        valores = {"marca": _texto(marca), "modelo": _texto(modelo), "serie": _texto(serie)}
        for _, clave in MAQUINA_FISCAL_CAMPOS:
            if valores[clave] is None:
                raise MissingRequiredField(clave, "maquinaFiscal")
        self._maquina_fiscal = objeto("maquinaFiscal", MAQUINA_FISCAL_CAMPOS, valores)
        return self

    # -------------------------
    # Build
    # -------------------------

    def _validar(self) -> None:
        if self._emisor is None or self._secuencial is None:
            raise MissingRequiredField("infoTributaria (set_header)")
        if self._fecha_emision is None:
            raise MissingRequiredField("fechaEmision", self.INFO_TAG)
        comprador = self._comprador
        if comprador is None:
            raise MissingRequiredField("comprador", self.INFO_TAG)
        if not _texto(comprador.tipo_identificacion):
            raise MissingRequiredField("tipoIdentificacionComprador", self.INFO_TAG)
        if not _texto(comprador.identificacion):
            raise MissingRequiredField("identificacionComprador", self.INFO_TAG)
        if not _texto(comprador.razon_social):
            raise MissingRequiredField("razonSocialComprador", self.INFO_TAG)
        if not self._detalles:
            raise MissingRequiredField("detalle", "detalles")
        if self._totales is None:
            raise MissingRequiredField("totales (set_totals)", self.INFO_TAG)

    def _resolver_clave_acceso(self) -> str:
        if self._clave_acceso:
            return self._clave_acceso
        emisor = self._emisor
        return generar_clave_acceso(
            fecha_emision=self._fecha_emision,
            tipo_comprobante=self.COD_DOC,
            ruc=emisor.ruc,
            ambiente=emisor.ambiente,
            serie=emisor.serie,
            secuencial=self._secuencial,
            codigo_numerico=self._codigo_numerico or generar_codigo_numerico(8),
            tipo_emision=emisor.tipo_emision,
        )

    def _info_tributaria(self, clave_acceso: str) -> Object:
        emisor = self._emisor
        return objeto(
            "infoTributaria",
            INFO_TRIBUTARIA_CAMPOS,
            {
                "ambiente": emisor.ambiente,
                "tipo_emision": emisor.tipo_emision,
                "razon_social": emisor.razon_social,
                "nombre_comercial": emisor.nombre_comercial or emisor.razon_social,
                "ruc": emisor.ruc,
                "clave_acceso": clave_acceso,
                "cod_doc": self.COD_DOC,
                "estab": emisor.estab,
                "pto_emi": emisor.pto_emi,
                "secuencial": self._secuencial,
                "dir_matriz": emisor.dir_matriz,
                "agente_retencion": emisor.agente_retencion,
                "contribuyente_rimpe": emisor.contribuyente_rimpe,
            },
        )

    def _info_adicional_node(self) -> Optional[RepeatedGroup]:
        return grupo("infoAdicional", self._info_adicional)

    def _documento(self, clave_acceso: str) -> Node:
        raise NotImplementedError

    def build(self) -> SerializedDocument:
        self._validar()
        clave_acceso = self._resolver_clave_acceso()
        xml = to_xml_bytes(self._documento(clave_acceso))

        logger.info(
            "XML %s construido: clave=%s secuencial=%s lineas=%s",
            self.TIPO,
            clave_acceso,
            self._secuencial,
            len(self._detalles),
        )
        return SerializedDocument(clave_acceso=clave_acceso, tipo=self.TIPO, xml=xml)


def _opcional_dinero(valor: Optional[Numero]) -> Optional[str]:
    if valor is None or valor == "":
        return None
    return formatear_dinero(valor)
