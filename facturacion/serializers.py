# facturacion/serializers.py
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import pytz
from django.conf import settings
from django.utils import timezone
from rest_framework import serializers

from facturacion.services.sri.xml_builder import Comprador, DocumentBuilder, Emisor
from facturacion.services.sri.xml_credit_note_builder import CreditNoteBuilder
from facturacion.services.sri.xml_invoice_builder import InvoiceBuilder
from facturacion.validators import (
    TIPOS_IDENTIFICACION,
    validar_codigo_pais,
    validar_forma_pago,
    validar_identificacion,
    validar_incoterm,
)

FORMATOS_FECHA = ["%d/%m/%Y", "iso-8601"]


def _monto(**kwargs) -> serializers.DecimalField:
    # 6 decimales de entrada; el builder redondea a 2 al emitir.
    return serializers.DecimalField(max_digits=18, decimal_places=6, **kwargs)


def _fecha(**kwargs) -> serializers.DateField:
    return serializers.DateField(input_formats=FORMATOS_FECHA, **kwargs)


def _sin_vacios(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v not in (None, "")}


# =========================
# Bloques reutilizables
# =========================


class CompradorSerializer(serializers.Serializer):
    tipo_identificacion = serializers.ChoiceField(choices=sorted(TIPOS_IDENTIFICACION.items()))
    identificacion = serializers.CharField(max_length=20)
    razon_social = serializers.CharField(max_length=300)
    direccion = serializers.CharField(max_length=300, required=False, allow_blank=True)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        error = validar_identificacion(attrs["tipo_identificacion"], attrs["identificacion"])
        if error:
            raise serializers.ValidationError({"identificacion": error})
        return attrs

    @staticmethod
    def to_comprador(data: Dict[str, Any]) -> Comprador:
        return Comprador(
            tipo_identificacion=data["tipo_identificacion"],
            identificacion=data["identificacion"].strip(),
            razon_social=data["razon_social"],
            direccion=data.get("direccion") or None,
        )


class ImpuestoSerializer(serializers.Serializer):
    """
    Impuesto de una línea o del total. base_imponible y valor son
    opcionales en las líneas (se calculan desde el total de la línea).
    """

    codigo = serializers.CharField(max_length=1)
    codigo_porcentaje = serializers.CharField(max_length=4)
    tarifa = _monto(required=False)
    base_imponible = _monto(required=False)
    valor = _monto(required=False)
    descuento_adicional = _monto(required=False)
    valor_devolucion_iva = _monto(required=False)


class ItemSerializer(serializers.Serializer):
    codigo = serializers.CharField(max_length=25)
    codigo_auxiliar = serializers.CharField(max_length=25, required=False, allow_blank=True)
    descripcion = serializers.CharField(max_length=300)
    unidad_medida = serializers.CharField(max_length=50, required=False, allow_blank=True)
    cantidad = _monto()
    precio_unitario = _monto()
    precio_sin_subsidio = _monto(required=False)
    descuento = _monto(required=False, default=0)
    precio_total_sin_impuesto = _monto(required=False)
    detalles_adicionales = serializers.DictField(
        child=serializers.CharField(max_length=300), required=False
    )
    impuestos = ImpuestoSerializer(many=True)

    def validate_cantidad(self, value):
        if value <= 0:
            raise serializers.ValidationError("La cantidad debe ser mayor que cero.")
        return value

    def validate_impuestos(self, value):
        if not value:
            raise serializers.ValidationError("Cada ítem debe tener al menos un impuesto.")
        return value

    def validate_detalles_adicionales(self, value):
        if len(value) > 3:
            raise serializers.ValidationError("Máximo 3 detalles adicionales por ítem.")
        return value


class PagoSerializer(serializers.Serializer):
    forma_pago = serializers.CharField(max_length=2)
    total = _monto()
    plazo = serializers.IntegerField(required=False, min_value=0)
    unidad_tiempo = serializers.CharField(max_length=10, required=False, allow_blank=True)

    def validate_forma_pago(self, value: str) -> str:
        value = value.strip().zfill(2)
        if not validar_forma_pago(value):
            raise serializers.ValidationError("Forma de pago SRI inválida (01-21).")
        return value


class CompensacionSerializer(serializers.Serializer):
    codigo = serializers.CharField(max_length=2)
    tarifa = _monto()
    valor = _monto()


class CampoAdicionalSerializer(serializers.Serializer):
    nombre = serializers.CharField(max_length=300)
    valor = serializers.CharField(max_length=300, allow_blank=True)


class MaquinaFiscalSerializer(serializers.Serializer):
    marca = serializers.CharField(max_length=30)
    modelo = serializers.CharField(max_length=30)
    serie = serializers.CharField(max_length=30)


class TotalesFacturaSerializer(serializers.Serializer):
    total_sin_impuestos = _monto(required=False)
    total_descuento = _monto(required=False)
    importe_total = _monto(required=False)
    propina = _monto(required=False, default=0)
    total_subsidio = _monto(required=False)
    moneda = serializers.CharField(max_length=15, required=False, default="DOLAR")
    valor_ret_iva = _monto(required=False)
    valor_ret_renta = _monto(required=False)
    impuestos = ImpuestoSerializer(many=True, required=False)
    pagos = PagoSerializer(many=True, required=False)


class TotalesNotaCreditoSerializer(serializers.Serializer):
    total_sin_impuestos = _monto(required=False)
    valor_modificacion = _monto(required=False)
    moneda = serializers.CharField(max_length=15, required=False, default="DOLAR")
    impuestos = ImpuestoSerializer(many=True, required=False)


class ExportacionSerializer(serializers.Serializer):
    inco_term_factura = serializers.CharField(max_length=10)
    lugar_inco_term = serializers.CharField(max_length=300)
    pais_origen = serializers.CharField(max_length=3)
    puerto_embarque = serializers.CharField(max_length=300)
    puerto_destino = serializers.CharField(max_length=300)
    pais_destino = serializers.CharField(max_length=3)
    pais_adquisicion = serializers.CharField(max_length=3)
    inco_term_total_sin_impuestos = serializers.CharField(max_length=10, required=False)
    flete_internacional = _monto(required=False)
    seguro_internacional = _monto(required=False)
    gastos_aduaneros = _monto(required=False)
    gastos_transporte_otros = _monto(required=False)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        errores = {}
        for campo in ("inco_term_factura", "inco_term_total_sin_impuestos"):
            if attrs.get(campo) and not validar_incoterm(attrs[campo]):
                errores[campo] = "Incoterm inválido (solo mayúsculas)."
        for campo in ("pais_origen", "pais_destino", "pais_adquisicion"):
            if not validar_codigo_pais(attrs[campo]):
                errores[campo] = "Código de país inválido (3 dígitos)."
        if errores:
            raise serializers.ValidationError(errores)
        return attrs


class ReembolsoDetalleSerializer(serializers.Serializer):
    tipo_identificacion_proveedor = serializers.CharField(max_length=2)
    identificacion_proveedor = serializers.CharField(max_length=20)
    cod_pais_pago_proveedor = serializers.CharField(max_length=3)
    tipo_proveedor = serializers.CharField(max_length=2)
    cod_doc = serializers.CharField(max_length=2)
    estab = serializers.RegexField(r"^\d{1,3}$")
    pto_emi = serializers.RegexField(r"^\d{1,3}$")
    secuencial = serializers.RegexField(r"^\d{1,9}$")
    fecha_emision = _fecha()
    numero_autorizacion = serializers.CharField(max_length=49)
    impuestos = ImpuestoSerializer(many=True)


class ReembolsoSerializer(serializers.Serializer):
    cod_doc_reembolso = serializers.CharField(max_length=2, required=False, default="41")
    total_comprobantes_reembolso = _monto()
    total_base_imponible_reembolso = _monto()
    total_impuesto_reembolso = _monto()
    detalles = ReembolsoDetalleSerializer(many=True)


class RetencionSerializer(serializers.Serializer):
    codigo = serializers.CharField(max_length=1)
    codigo_porcentaje = serializers.CharField(max_length=3)
    tarifa = _monto()
    valor = _monto()


class RubroSerializer(serializers.Serializer):
    concepto = serializers.CharField(max_length=300)
    total = _monto()


# =========================
# Comprobantes
# =========================


class ComprobanteInputSerializer(serializers.Serializer):
    """
    Campos comunes de factura y nota de crédito.

    La fecha de emisión se valida contra la fecha de Ecuador: máximo 90 días
    atrás y 1 día adelante (tolerancia UTC vs America/Guayaquil).
    """

    secuencial = serializers.RegexField(r"^\d{1,9}$")
    fecha_emision = _fecha()
    comprador = CompradorSerializer()
    dir_establecimiento = serializers.CharField(max_length=300, required=False, allow_blank=True)
    items = ItemSerializer(many=True)
    compensaciones = CompensacionSerializer(many=True, required=False)
    maquina_fiscal = MaquinaFiscalSerializer(required=False)
    info_adicional = CampoAdicionalSerializer(many=True, required=False)

    def validate_items(self, value: List[Dict[str, Any]]):
        if not value:
            raise serializers.ValidationError("Debe existir al menos un ítem.")
        return value

    def validate_info_adicional(self, value: List[Dict[str, Any]]):
        if len(value) > 15:
            raise serializers.ValidationError("Máximo 15 campos adicionales.")
        return value

    def validate_fecha_emision(self, value: date) -> date:
        if not getattr(settings, "SRI_VALIDAR_RANGO_FECHA", True):
            return value

        ecuador_tz = pytz.timezone("America/Guayaquil")
        hoy_ecuador = timezone.now().astimezone(ecuador_tz).date()
        if isinstance(value, datetime):
            value = value.date()

        fecha_minima = hoy_ecuador - timedelta(days=90)
        if value < fecha_minima:
            raise serializers.ValidationError(
                f"La fecha de emisión ({value.strftime('%d/%m/%Y')}) está fuera del rango "
                f"permitido por el SRI (máximo 90 días atrás). "
                f"Fecha mínima permitida: {fecha_minima.strftime('%d/%m/%Y')}."
            )
        fecha_maxima = hoy_ecuador + timedelta(days=1)
        if value > fecha_maxima:
            raise serializers.ValidationError(
                f"La fecha de emisión ({value.strftime('%d/%m/%Y')}) no puede ser más de un "
                f"día en el futuro. Fecha actual en Ecuador: {hoy_ecuador.strftime('%d/%m/%Y')}."
            )
        return value

    # -------------------------
    # Builder
    # -------------------------

    def _builder_comun(self, builder: DocumentBuilder, emisor: Emisor) -> None:
        data = self.validated_data
        builder.set_header(emisor, data["secuencial"])

        for item in data["items"]:
            builder.add_line_item(
                codigo=item["codigo"],
                descripcion=item["descripcion"],
                cantidad=item["cantidad"],
                precio_unitario=item["precio_unitario"],
                descuento=item.get("descuento") or 0,
                impuestos=[_sin_vacios(i) for i in item["impuestos"]],
                codigo_auxiliar=item.get("codigo_auxiliar") or None,
                unidad_medida=item.get("unidad_medida") or None,
                precio_sin_subsidio=item.get("precio_sin_subsidio"),
                precio_total_sin_impuesto=item.get("precio_total_sin_impuesto"),
                detalles_adicionales=item.get("detalles_adicionales"),
            )

        if data.get("compensaciones"):
            builder.set_compensations(data["compensaciones"])
        maquina = data.get("maquina_fiscal")
        if maquina:
            builder.set_fiscal_machine(maquina["marca"], maquina["modelo"], maquina["serie"])

        for campo in data.get("info_adicional", []):
            builder.add_additional_field(campo["nombre"], campo["valor"])

    def to_builder(self, emisor: Optional[Emisor] = None) -> DocumentBuilder:
        raise NotImplementedError


class FacturaInputSerializer(ComprobanteInputSerializer):
    guia_remision = serializers.RegexField(r"^\d{3}-\d{3}-\d{9}$", required=False)
    placa = serializers.CharField(max_length=20, required=False, allow_blank=True)
    totales = TotalesFacturaSerializer(required=False)
    exportacion = ExportacionSerializer(required=False)
    reembolso = ReembolsoSerializer(required=False)
    retenciones = RetencionSerializer(many=True, required=False)
    rubros_terceros = RubroSerializer(many=True, required=False)
    correo_negociable = serializers.EmailField(required=False)

    def to_builder(self, emisor: Optional[Emisor] = None) -> InvoiceBuilder:
        """
        InvoiceBuilder listo para build(). Si no se entrega emisor se usa
        Emisor.from_settings().
        """
        data = self.validated_data
        builder = InvoiceBuilder()
        self._builder_comun(builder, emisor or Emisor.from_settings())

        builder.set_body(
            fecha_emision=data["fecha_emision"],
            comprador=CompradorSerializer.to_comprador(data["comprador"]),
            dir_establecimiento=data.get("dir_establecimiento") or None,
            guia_remision=data.get("guia_remision"),
            placa=data.get("placa") or None,
        )

        totales = data.get("totales") or {}
        builder.set_totals(
            total_sin_impuestos=totales.get("total_sin_impuestos"),
            total_descuento=totales.get("total_descuento"),
            importe_total=totales.get("importe_total"),
            propina=totales.get("propina") or 0,
            impuestos=[_sin_vacios(i) for i in totales["impuestos"]] if totales.get("impuestos") else None,
            pagos=[_sin_vacios(p) for p in totales["pagos"]] if totales.get("pagos") else None,
            total_subsidio=totales.get("total_subsidio"),
            moneda=totales.get("moneda") or "DOLAR",
            valor_ret_iva=totales.get("valor_ret_iva"),
            valor_ret_renta=totales.get("valor_ret_renta"),
        )

        if data.get("exportacion"):
            builder.set_foreign_trade(**data["exportacion"])

        reembolso = data.get("reembolso")
        if reembolso:
            builder.set_refund(
                total_comprobantes_reembolso=reembolso["total_comprobantes_reembolso"],
                total_base_imponible_reembolso=reembolso["total_base_imponible_reembolso"],
                total_impuesto_reembolso=reembolso["total_impuesto_reembolso"],
                cod_doc_reembolso=reembolso.get("cod_doc_reembolso") or "41",
            )
            for detalle in reembolso["detalles"]:
                builder.add_refund_detail(
                    **{k: v for k, v in detalle.items() if k != "impuestos"},
                    impuestos=[_sin_vacios(i) for i in detalle["impuestos"]],
                )

        for retencion in data.get("retenciones", []):
            builder.add_withholding(**retencion)
        for rubro in data.get("rubros_terceros", []):
            builder.add_third_party_item(rubro["concepto"], rubro["total"])
        if data.get("correo_negociable"):
            builder.set_negotiable(data["correo_negociable"])

        return builder


class NotaCreditoInputSerializer(ComprobanteInputSerializer):
    cod_doc_modificado = serializers.RegexField(r"^\d{2}$", required=False, default="01")
    num_doc_modificado = serializers.RegexField(r"^\d{3}-\d{3}-\d{9}$")
    fecha_emision_doc_sustento = _fecha()
    motivo = serializers.CharField(max_length=300)
    rise = serializers.CharField(max_length=40, required=False, allow_blank=True)
    totales = TotalesNotaCreditoSerializer(required=False)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        attrs = super().validate(attrs)
        sustento = attrs.get("fecha_emision_doc_sustento")
        emision = attrs.get("fecha_emision")
        if sustento and emision and sustento > emision:
            raise serializers.ValidationError(
                {
                    "fecha_emision_doc_sustento": (
                        "La fecha del documento modificado no puede ser posterior "
                        "a la fecha de emisión de la nota de crédito."
                    )
                }
            )
        return attrs

    def to_builder(self, emisor: Optional[Emisor] = None) -> CreditNoteBuilder:
        data = self.validated_data
        builder = CreditNoteBuilder()
        self._builder_comun(builder, emisor or Emisor.from_settings())

        builder.set_body(
            fecha_emision=data["fecha_emision"],
            comprador=CompradorSerializer.to_comprador(data["comprador"]),
            num_doc_modificado=data["num_doc_modificado"],
            fecha_emision_doc_sustento=data["fecha_emision_doc_sustento"],
            motivo=data["motivo"],
            cod_doc_modificado=data.get("cod_doc_modificado") or "01",
            rise=data.get("rise") or None,
            dir_establecimiento=data.get("dir_establecimiento") or None,
        )
        # notaCredito 1.1.0 no tiene direccionComprador
        direccion = data["comprador"].get("direccion")
        if direccion:
            builder.add_additional_field("Dirección", direccion)

        totales = data.get("totales") or {}
        builder.set_totals(
            total_sin_impuestos=totales.get("total_sin_impuestos"),
            valor_modificacion=totales.get("valor_modificacion"),
            impuestos=[_sin_vacios(i) for i in totales["impuestos"]] if totales.get("impuestos") else None,
            moneda=totales.get("moneda") or "DOLAR",
        )
        return builder
