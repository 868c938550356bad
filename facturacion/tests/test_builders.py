# facturacion/tests/test_builders.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import date

from django.test import SimpleTestCase, override_settings
from lxml import etree

from facturacion.services.sri.errors import (
    InvalidFieldWidth,
    MissingRequiredField,
    PreconditionError,
)
from facturacion.services.sri.nodes import (
    AttributedScalar,
    Object,
    RepeatedGroup,
    Scalar,
    grupo,
    objeto,
    render,
    to_xml_bytes,
)
from facturacion.services.sri.xml_builder import (
    Emisor,
    formatear_cantidad,
    formatear_dinero,
)
from facturacion.services.sri.xml_credit_note_builder import CreditNoteBuilder
from facturacion.services.sri.xml_invoice_builder import InvoiceBuilder
from facturacion.utils import validar_clave_acceso

from .factories import IVA_15, comprador, emisor, factura_builder, nota_credito_builder


def _parse(documento) -> etree._Element:
    return etree.fromstring(documento.xml)


def _tags(elem) -> list:
    return [child.tag for child in elem]


class NodesTests(SimpleTestCase):
    def test_objeto_respeta_orden_y_omite_vacios(self):
        nodo = objeto(
            "raiz",
            (("b", "b"), ("a", "a"), ("c", "c"), ("d", "d")),
            {"a": "1", "b": "2", "c": None, "d": ""},
        )
        self.assertEqual([h.name for h in nodo.children], ["b", "a"])

    def test_grupo_vacio_no_se_emite(self):
        self.assertIsNone(grupo("detalles", []))
        self.assertIsInstance(grupo("detalles", [Scalar("x", "1")]), RepeatedGroup)

    def test_render_atributos_y_grupos(self):
        raiz = Object(
            "factura",
            (
                RepeatedGroup(
                    "infoAdicional",
                    (AttributedScalar("campoAdicional", "a@b.ec", (("nombre", "Email"),)),),
                ),
            ),
            (("id", "comprobante"),),
        )
        xml = to_xml_bytes(raiz)
        self.assertTrue(xml.startswith(b"<?xml version='1.0' encoding='UTF-8'?>"))
        elem = etree.fromstring(xml)
        self.assertEqual(elem.get("id"), "comprobante")
        campo = elem.find("infoAdicional/campoAdicional")
        self.assertEqual(campo.get("nombre"), "Email")
        self.assertEqual(campo.text, "a@b.ec")

    def test_render_rechaza_tipos_desconocidos(self):
        with self.assertRaises(TypeError):
            render({"no": "es un nodo"})


class FormatoNumericoTests(SimpleTestCase):
    def test_redondeo_half_up(self):
        self.assertEqual(formatear_dinero("2.345"), "2.35")
        self.assertEqual(formatear_dinero("2.344"), "2.34")
        self.assertEqual(formatear_dinero(0.125), "0.13")
        self.assertEqual(formatear_dinero(10), "10.00")

    def test_cantidad_seis_decimales(self):
        self.assertEqual(formatear_cantidad("2.5"), "2.500000")
        self.assertEqual(formatear_cantidad("0.0000005"), "0.000001")

    def test_numero_invalido(self):
        with self.assertRaises(PreconditionError):
            formatear_dinero("diez")


class EmisorTests(SimpleTestCase):
    def test_anchos(self):
        with self.assertRaises(InvalidFieldWidth):
            emisor(ruc="179001234400")
        with self.assertRaises(InvalidFieldWidth):
            emisor(estab="1")
        with self.assertRaises(InvalidFieldWidth):
            emisor(ambiente="3")
        with self.assertRaises(MissingRequiredField):
            emisor(razon_social="  ")

    @override_settings(
        SRI_EMISOR_RUC="1790012344001",
        SRI_EMISOR_RAZON_SOCIAL="ACME S.A.",
        SRI_EMISOR_DIR_MATRIZ="Quito",
        SRI_ESTABLECIMIENTO="2",
        SRI_PUNTO_EMISION="3",
        SRI_AMBIENTE="2",
        SRI_EMISOR_RIMPE=True,
        SRI_EMISOR_OBLIGADO_CONTABILIDAD=True,
    )
    def test_from_settings(self):
        e = Emisor.from_settings()
        self.assertEqual(e.serie, "002003")
        self.assertEqual(e.ambiente, "2")
        self.assertTrue(e.obligado_contabilidad)
        self.assertEqual(e.contribuyente_rimpe, "CONTRIBUYENTE RÉGIMEN RIMPE")


class InvoiceBuilderTests(SimpleTestCase):
    def test_estructura_y_orden(self):
        doc = factura_builder().build()
        root = _parse(doc)

        self.assertEqual(root.tag, "factura")
        self.assertEqual(root.get("id"), "comprobante")
        self.assertEqual(root.get("version"), "2.1.0")
        self.assertEqual(_tags(root), ["infoTributaria", "infoFactura", "detalles"])
        self.assertEqual(
            _tags(root.find("infoTributaria")),
            [
                "ambiente",
                "tipoEmision",
                "razonSocial",
                "nombreComercial",
                "ruc",
                "claveAcceso",
                "codDoc",
                "estab",
                "ptoEmi",
                "secuencial",
                "dirMatriz",
            ],
        )
        self.assertEqual(doc.tipo, "factura")

    def test_clave_acceso_en_xml(self):
        doc = factura_builder(secuencial=25).build()
        root = _parse(doc)
        clave = root.findtext("infoTributaria/claveAcceso")

        self.assertEqual(clave, doc.clave_acceso)
        self.assertTrue(validar_clave_acceso(clave))
        self.assertEqual(clave[:8], "15012024")
        self.assertEqual(clave[8:10], "01")
        self.assertEqual(clave[24:30], "001002")
        self.assertEqual(clave[30:39], "000000025")
        self.assertEqual(clave[39:47], "12345678")
        self.assertEqual(root.findtext("infoTributaria/secuencial"), "000000025")
        self.assertEqual(root.findtext("infoFactura/fechaEmision"), "15/01/2024")

    def test_detalle_y_totales_calculados(self):
        root = _parse(factura_builder().build())
        detalle = root.find("detalles/detalle")

        self.assertEqual(detalle.findtext("cantidad"), "2.500000")
        self.assertEqual(detalle.findtext("precioUnitario"), "10.333333")
        self.assertEqual(detalle.findtext("descuento"), "0.00")
        self.assertEqual(detalle.findtext("precioTotalSinImpuesto"), "25.83")
        impuesto = detalle.find("impuestos/impuesto")
        self.assertEqual(impuesto.findtext("tarifa"), "15.00")
        self.assertEqual(impuesto.findtext("baseImponible"), "25.83")
        self.assertEqual(impuesto.findtext("valor"), "3.87")

        info = root.find("infoFactura")
        self.assertEqual(info.findtext("obligadoContabilidad"), "NO")
        self.assertEqual(info.findtext("totalSinImpuestos"), "25.83")
        self.assertEqual(info.findtext("totalDescuento"), "0.00")
        self.assertEqual(info.findtext("importeTotal"), "29.70")
        self.assertEqual(info.findtext("moneda"), "DOLAR")
        self.assertEqual(info.findtext("direccionComprador"), "Calle 1 y Calle 2")
        pago = info.find("pagos/pago")
        self.assertEqual(pago.findtext("formaPago"), "01")
        self.assertEqual(pago.findtext("total"), "29.70")
        self.assertIsNone(pago.find("plazo"))

    def test_total_con_impuestos_agrega_por_codigo(self):
        builder = InvoiceBuilder()
        builder.set_header(emisor(), 7)
        builder.set_body("15/01/2024", comprador())
        builder.add_line_item("A", "Item A", 1, "10", impuestos=[IVA_15])
        builder.add_line_item("B", "Item B", 2, "5", descuento="1", impuestos=[IVA_15])
        builder.add_line_item(
            "C", "Item C", 1, "4", impuestos=[{"codigo": "2", "codigo_porcentaje": "0", "tarifa": 0}]
        )
        builder.set_totals()
        root = _parse(builder.build())

        totales = root.findall("infoFactura/totalConImpuestos/totalImpuesto")
        self.assertEqual(
            [(t.findtext("codigoPorcentaje"), t.findtext("baseImponible"), t.findtext("valor")) for t in totales],
            [("4", "19.00", "2.85"), ("0", "4.00", "0.00")],
        )
        self.assertEqual(
            _tags(totales[0]), ["codigo", "codigoPorcentaje", "baseImponible", "tarifa", "valor"]
        )
        self.assertEqual(root.findtext("infoFactura/totalDescuento"), "1.00")
        self.assertEqual(root.findtext("infoFactura/importeTotal"), "25.85")

    def test_totales_y_pagos_explicitos(self):
        builder = InvoiceBuilder()
        builder.set_header(emisor(), 1)
        builder.set_body(date(2024, 1, 15), comprador(), guia_remision="001-001-000000123")
        builder.add_line_item("A", "Item A", 1, "100", impuestos=[IVA_15])
        builder.set_totals(
            propina="10",
            pagos=[
                {"forma_pago": "19", "total": "100", "plazo": 30},
                {"forma_pago": "1", "total": "25"},
            ],
        )
        info = _parse(builder.build()).find("infoFactura")

        self.assertEqual(info.findtext("guiaRemision"), "001-001-000000123")
        self.assertEqual(info.findtext("propina"), "10.00")
        self.assertEqual(info.findtext("importeTotal"), "125.00")
        pagos = info.findall("pagos/pago")
        self.assertEqual(pagos[0].findtext("plazo"), "30")
        self.assertEqual(pagos[0].findtext("unidadTiempo"), "dias")
        self.assertEqual(pagos[1].findtext("formaPago"), "01")

    def test_secciones_opcionales(self):
        builder = factura_builder()
        builder.add_additional_field("Email", "cliente@correo.ec")
        builder.add_additional_field("Vacío", "   ")
        builder.add_additional_field("Largo", "x" * 300)
        builder.set_fiscal_machine("EPSON", "TM-T20", "SN123")
        builder.add_withholding("4", "327", "1", "0.26")
        builder.add_third_party_item("Transporte", "3.5")
        root = _parse(builder.build())

        self.assertEqual(
            _tags(root),
            [
                "infoTributaria",
                "infoFactura",
                "detalles",
                "retenciones",
                "otrosRubrosTerceros",
                "maquinaFiscal",
                "infoAdicional",
            ],
        )
        campos = root.findall("infoAdicional/campoAdicional")
        self.assertEqual([c.get("nombre") for c in campos], ["Email", "Largo"])
        self.assertEqual(len(campos[1].text), 300)
        self.assertEqual(root.findtext("otrosRubrosTerceros/rubro/total"), "3.50")

    def test_campo_adicional_demasiado_largo(self):
        builder = factura_builder()
        with self.assertRaises(InvalidFieldWidth) as ctx:
            builder.add_additional_field("Largo", "x" * 301)
        self.assertIsInstance(ctx.exception, PreconditionError)
        self.assertIn("campoAdicional[Largo]", str(ctx.exception))
        self.assertIsNone(_parse(builder.build()).find("infoAdicional"))

    def test_exportacion(self):
        builder = factura_builder()
        builder.set_foreign_trade(
            inco_term_factura="FOB",
            lugar_inco_term="Guayaquil",
            pais_origen="593",
            puerto_embarque="Guayaquil",
            puerto_destino="Miami",
            pais_destino="840",
            pais_adquisicion="840",
            flete_internacional="100",
        )
        info = _parse(builder.build()).find("infoFactura")

        self.assertEqual(info.findtext("comercioExterior"), "EXPORTADOR")
        self.assertEqual(info.findtext("fleteInternacional"), "100.00")
        tags = _tags(info)
        self.assertLess(tags.index("comercioExterior"), tags.index("tipoIdentificacionComprador"))
        self.assertLess(tags.index("fleteInternacional"), tags.index("importeTotal"))

    def test_reembolso_requiere_set_refund(self):
        builder = factura_builder()
        builder.add_refund_detail(
            tipo_identificacion_proveedor="04",
            identificacion_proveedor="1790012344001",
            cod_pais_pago_proveedor="593",
            tipo_proveedor="02",
            cod_doc="01",
            estab="1",
            pto_emi="1",
            secuencial="15",
            fecha_emision="10/01/2024",
            numero_autorizacion="1" * 49,
            impuestos=[{"codigo": "2", "codigo_porcentaje": "4", "tarifa": 15, "base_imponible": 10, "valor": 1.5}],
        )
        with self.assertRaises(MissingRequiredField):
            builder.build()

        builder.set_refund(10, 10, 1.5)
        root = _parse(builder.build())
        self.assertEqual(root.findtext("infoFactura/codDocReembolso"), "41")
        self.assertEqual(root.findtext("reembolsos/reembolsoDetalle/estabDocReembolso"), "001")

    def test_campos_obligatorios(self):
        builder = InvoiceBuilder()
        with self.assertRaises(MissingRequiredField):
            builder.build()

        builder.set_header(emisor(), 1)
        builder.set_body(date(2024, 1, 15), comprador())
        builder.set_totals()
        with self.assertRaises(MissingRequiredField):
            builder.build()

        with self.assertRaises(MissingRequiredField):
            builder.add_line_item("A", "Item A", 1, 1, impuestos=[])

    def test_precondiciones_de_cabecera(self):
        builder = InvoiceBuilder()
        with self.assertRaises(InvalidFieldWidth):
            builder.set_header(emisor(), "1234567890")
        with self.assertRaises(InvalidFieldWidth):
            builder.set_header(emisor(), 1, clave_acceso="123")
        with self.assertRaises(InvalidFieldWidth):
            builder.set_body("2024/01/15", comprador())
        with self.assertRaises(InvalidFieldWidth):
            builder.set_body(date(2024, 1, 15), comprador(), guia_remision="001-001-1")

    def test_clave_acceso_entregada_se_respeta(self):
        primera = factura_builder().build()
        builder = factura_builder()
        builder.set_header(emisor(), 1, clave_acceso=primera.clave_acceso)
        self.assertEqual(builder.build().clave_acceso, primera.clave_acceso)

    def test_build_es_determinista(self):
        self.assertEqual(factura_builder().build().xml, factura_builder().build().xml)


class CreditNoteBuilderTests(SimpleTestCase):
    def test_estructura(self):
        doc = nota_credito_builder().build()
        root = _parse(doc)

        self.assertEqual(root.tag, "notaCredito")
        self.assertEqual(root.get("version"), "1.1.0")
        self.assertEqual(doc.tipo, "nota_credito")
        self.assertEqual(root.findtext("infoTributaria/codDoc"), "04")
        self.assertEqual(doc.clave_acceso[8:10], "04")

        info = root.find("infoNotaCredito")
        self.assertEqual(
            _tags(info),
            [
                "fechaEmision",
                "dirEstablecimiento",
                "tipoIdentificacionComprador",
                "razonSocialComprador",
                "identificacionComprador",
                "obligadoContabilidad",
                "codDocModificado",
                "numDocModificado",
                "fechaEmisionDocSustento",
                "totalSinImpuestos",
                "valorModificacion",
                "moneda",
                "totalConImpuestos",
                "motivo",
            ],
        )
        self.assertEqual(info.findtext("fechaEmisionDocSustento"), "15/01/2024")
        self.assertEqual(info.findtext("totalSinImpuestos"), "10.00")
        self.assertEqual(info.findtext("valorModificacion"), "11.50")
        self.assertEqual(
            _tags(info.find("totalConImpuestos/totalImpuesto")),
            ["codigo", "codigoPorcentaje", "baseImponible", "valor"],
        )

    def test_detalle_usa_codigo_interno(self):
        detalle = _parse(nota_credito_builder().build()).find("detalles/detalle")
        self.assertEqual(detalle.findtext("codigoInterno"), "P001")
        self.assertIsNone(detalle.find("codigoPrincipal"))

    def test_rechaza_campos_de_factura(self):
        builder = nota_credito_builder()
        with self.assertRaises(PreconditionError):
            builder.add_line_item("X", "Item", 1, 1, unidad_medida="UND", impuestos=[IVA_15])

    def test_referencia_obligatoria(self):
        builder = CreditNoteBuilder()
        builder.set_header(emisor(), 1)
        builder.set_body(
            fecha_emision=date(2024, 1, 20),
            comprador=comprador(),
            num_doc_modificado="001-002-000000001",
            fecha_emision_doc_sustento=date(2024, 1, 15),
            motivo="",
        )
        builder.add_line_item("A", "Item", 1, 1, impuestos=[IVA_15])
        builder.set_totals()
        with self.assertRaises(MissingRequiredField):
            builder.build()

    def test_formato_documento_modificado(self):
        builder = CreditNoteBuilder()
        with self.assertRaises(InvalidFieldWidth):
            builder.set_body(
                fecha_emision=date(2024, 1, 20),
                comprador=comprador(),
                num_doc_modificado="001002000000001",
                fecha_emision_doc_sustento=date(2024, 1, 15),
                motivo="Devolución",
            )

    def test_motivo_demasiado_largo(self):
        builder = CreditNoteBuilder()
        builder.set_header(emisor(), 1)
        with self.assertRaises(InvalidFieldWidth):
            builder.set_body(
                fecha_emision=date(2024, 1, 20),
                comprador=comprador(),
                num_doc_modificado="001-002-000000001",
                fecha_emision_doc_sustento=date(2024, 1, 15),
                motivo="d" * 301,
            )

        builder.set_body(
            fecha_emision=date(2024, 1, 20),
            comprador=comprador(),
            num_doc_modificado="001-002-000000001",
            fecha_emision_doc_sustento=date(2024, 1, 15),
            motivo="d" * 300,
        )
        builder.add_line_item("A", "Item", 1, 1, impuestos=[IVA_15])
        builder.set_totals()
        self.assertEqual(len(_parse(builder.build()).findtext("infoNotaCredito/motivo")), 300)
