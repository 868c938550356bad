# facturacion/tests/test_utils.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import date, datetime

from django.test import SimpleTestCase

from facturacion.services.sri.errors import InvalidFieldWidth, PreconditionError
from facturacion.utils import (
    CLAVE_ACCESO_LONGITUD,
    extraer_fecha_clave_acceso,
    generar_clave_acceso,
    generar_codigo_numerico,
    modulo11,
    validar_clave_acceso,
)

from .factories import CLAVE_REFERENCIA


class Modulo11Tests(SimpleTestCase):
    def test_un_digito(self):
        # 6*2 = 12 -> 11 - 1 = 10 -> 1
        self.assertEqual(modulo11("6"), 1)
        # 0 -> 11 -> 0
        self.assertEqual(modulo11("0"), 0)

    def test_cuerpo_de_clave_de_referencia(self):
        self.assertEqual(modulo11(CLAVE_REFERENCIA[:48]), 0)

    def test_factores_se_repiten_desde_la_derecha(self):
        # 1*2 + 1*3 + 1*4 + 1*5 + 1*6 + 1*7 + 1*2 = 29 -> 29 % 11 = 7 -> 4
        self.assertEqual(modulo11("1111111"), 4)

    def test_rechaza_no_digitos(self):
        with self.assertRaises(InvalidFieldWidth):
            modulo11("12a4")
        with self.assertRaises(InvalidFieldWidth):
            modulo11("")


class ClaveAccesoTests(SimpleTestCase):
    def _kwargs(self, **overrides):
        datos = dict(
            fecha_emision=date(2024, 1, 15),
            tipo_comprobante="01",
            ruc="1790012345001",
            ambiente="1",
            serie="001001",
            secuencial="000000001",
            codigo_numerico="12345678",
            tipo_emision="1",
        )
        datos.update(overrides)
        return datos

    def test_vector_de_referencia(self):
        clave = generar_clave_acceso(**self._kwargs())
        self.assertEqual(clave, CLAVE_REFERENCIA)
        self.assertEqual(len(clave), CLAVE_ACCESO_LONGITUD)

    def test_acepta_fecha_como_datetime_o_texto(self):
        self.assertEqual(
            generar_clave_acceso(**self._kwargs(fecha_emision=datetime(2024, 1, 15, 23, 59))),
            CLAVE_REFERENCIA,
        )
        self.assertEqual(
            generar_clave_acceso(**self._kwargs(fecha_emision="15012024")),
            CLAVE_REFERENCIA,
        )

    def test_anchos_exactos_son_precondicion(self):
        casos = [
            {"secuencial": "1"},
            {"serie": "0010011"},
            {"ruc": "179001234500"},
            {"codigo_numerico": "1234567"},
            {"tipo_comprobante": "1"},
            {"ambiente": "12"},
            {"fecha_emision": "2024-01-15"},
            {"fecha_emision": "32012024"},
        ]
        for caso in casos:
            with self.subTest(caso=caso):
                with self.assertRaises(InvalidFieldWidth) as ctx:
                    generar_clave_acceso(**self._kwargs(**caso))
                self.assertIsInstance(ctx.exception, PreconditionError)

    def test_validar_clave(self):
        self.assertTrue(validar_clave_acceso(CLAVE_REFERENCIA))
        self.assertFalse(validar_clave_acceso(CLAVE_REFERENCIA[:48] + "1"))
        self.assertFalse(validar_clave_acceso(CLAVE_REFERENCIA[:48]))
        self.assertFalse(validar_clave_acceso(None))

    def test_extraer_fecha(self):
        self.assertEqual(extraer_fecha_clave_acceso(CLAVE_REFERENCIA), date(2024, 1, 15))
        self.assertIsNone(extraer_fecha_clave_acceso("99999999"))
        self.assertIsNone(extraer_fecha_clave_acceso(""))


class CodigoNumericoTests(SimpleTestCase):
    def test_longitud_y_digitos(self):
        codigo = generar_codigo_numerico()
        self.assertEqual(len(codigo), 8)
        self.assertTrue(codigo.isdigit())

    def test_longitud_invalida(self):
        with self.assertRaises(ValueError):
            generar_codigo_numerico(0)
