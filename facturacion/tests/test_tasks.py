# facturacion/tests/test_tasks.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import shutil
import tempfile
from unittest import mock

from celery.exceptions import Retry
from django.test import SimpleTestCase, override_settings

from facturacion import tasks
from facturacion.services.sri.client import TransportClient
from facturacion.services.sri.errors import DocumentInProgress, InvalidFieldWidth
from facturacion.services.sri.storage import DocumentStore, Etapa
from facturacion.services.sri.workflow import (
    AuthorizationOrchestrator,
    Authorized,
    NotReceived,
    Pending,
)

from .factories import CLAVE_REFERENCIA, FakeGateway, devuelta, emisor


@override_settings(SRI_SETTLE_DELAY=5)
class EnviarComprobanteTaskTests(SimpleTestCase):
    def setUp(self):
        patcher = mock.patch("facturacion.tasks.get_orchestrator")
        self.orchestrator = patcher.start().return_value
        self.addCleanup(patcher.stop)

    def test_recibida_agenda_consulta(self):
        self.orchestrator.send_stored.return_value = Pending(CLAVE_REFERENCIA)
        with mock.patch.object(tasks.consultar_autorizacion_task, "apply_async") as apply_async:
            resultado = tasks.enviar_comprobante_task(CLAVE_REFERENCIA)

        self.assertEqual(resultado["estado"], "EN_PROCESO")
        apply_async.assert_called_once_with(args=[CLAVE_REFERENCIA], countdown=5)

    def test_devuelta_no_agenda(self):
        self.orchestrator.send_stored.return_value = NotReceived(CLAVE_REFERENCIA)
        with mock.patch.object(tasks.consultar_autorizacion_task, "apply_async") as apply_async:
            resultado = tasks.enviar_comprobante_task(CLAVE_REFERENCIA)

        self.assertEqual(resultado["estado"], "DEVUELTA")
        apply_async.assert_not_called()

    def test_sin_firmar(self):
        self.orchestrator.send_stored.side_effect = FileNotFoundError()
        resultado = tasks.enviar_comprobante_task(CLAVE_REFERENCIA)
        self.assertEqual(resultado, {"ok": False, "error": "ComprobanteNoFirmado"})

    def test_clave_bloqueada_reintenta(self):
        self.orchestrator.send_stored.side_effect = DocumentInProgress(CLAVE_REFERENCIA)
        with mock.patch.object(tasks.enviar_comprobante_task, "retry", side_effect=Retry()) as retry:
            with self.assertRaises(Retry):
                tasks.enviar_comprobante_task(CLAVE_REFERENCIA)
        self.assertEqual(retry.call_args.kwargs["countdown"], 60)


class ConsultarAutorizacionTaskTests(SimpleTestCase):
    def setUp(self):
        patcher = mock.patch("facturacion.tasks.get_orchestrator")
        self.orchestrator = patcher.start().return_value
        self.addCleanup(patcher.stop)

    def test_autorizado(self):
        self.orchestrator.check_status.return_value = Authorized(
            CLAVE_REFERENCIA, "/tmp/x.xml", CLAVE_REFERENCIA, "2024-01-15T10:30:00+00:00"
        )
        resultado = tasks.consultar_autorizacion_task(CLAVE_REFERENCIA)
        self.assertEqual(resultado["estado"], "AUTORIZADO")
        self.assertEqual(resultado["path"], "/tmp/x.xml")

    def test_en_proceso_reprograma_con_backoff(self):
        self.orchestrator.check_status.return_value = Pending(CLAVE_REFERENCIA)
        with mock.patch.object(
            tasks.consultar_autorizacion_task, "retry", side_effect=Retry()
        ) as retry:
            with self.assertRaises(Retry):
                tasks.consultar_autorizacion_task(CLAVE_REFERENCIA)
        retry.assert_called_once_with(countdown=60)

    def test_error_de_precondicion(self):
        self.orchestrator.check_status.side_effect = InvalidFieldWidth("claveAcceso", "49 dígitos", "1")
        resultado = tasks.consultar_autorizacion_task("1")
        self.assertFalse(resultado["ok"])


class ReintentarContingenciaTaskTests(SimpleTestCase):
    @override_settings(SRI_SETTLE_DELAY=3)
    def test_agenda_consulta_de_los_enviados(self):
        with mock.patch("facturacion.tasks.get_orchestrator") as get_orchestrator, mock.patch.object(
            tasks.consultar_autorizacion_task, "apply_async"
        ) as apply_async:
            get_orchestrator.return_value.retry_pending.return_value = [Pending(CLAVE_REFERENCIA)]
            resultado = tasks.reintentar_contingencia_task()

        self.assertTrue(resultado["ok"])
        self.assertEqual(resultado["enviados"], [CLAVE_REFERENCIA])
        self.assertEqual(resultado["resultados"][0]["estado"], "EN_PROCESO")
        apply_async.assert_called_once_with(args=[CLAVE_REFERENCIA], countdown=3)

    @override_settings(SRI_SETTLE_DELAY=3)
    def test_devuelta_no_agenda_y_entrega_mensajes(self):
        tmp = tempfile.mkdtemp(prefix="sri-tasks-")
        self.addCleanup(shutil.rmtree, tmp, ignore_errors=True)
        store = DocumentStore(tmp)
        store.guardar(
            Etapa.CONTINGENCIA,
            CLAVE_REFERENCIA,
            b"<?xml version='1.0' encoding='UTF-8'?><factura id=\"comprobante\"/>",
        )
        gateway = FakeGateway(recepcion=[devuelta(CLAVE_REFERENCIA, "43", "CLAVE ACCESO REGISTRADA")])
        transport = TransportClient(gateway=gateway, store=store, emisor=emisor(), retry_delay=0)
        orchestrator = AuthorizationOrchestrator(transport=transport, settle_delay=0)

        with mock.patch("facturacion.tasks.get_orchestrator", return_value=orchestrator), mock.patch.object(
            tasks.consultar_autorizacion_task, "apply_async"
        ) as apply_async:
            resultado = tasks.reintentar_contingencia_task()

        apply_async.assert_not_called()
        self.assertEqual(resultado["enviados"], [])
        self.assertEqual(len(resultado["resultados"]), 1)
        devuelto = resultado["resultados"][0]
        self.assertEqual(devuelto["estado"], "DEVUELTA")
        self.assertEqual(devuelto["clave_acceso"], CLAVE_REFERENCIA)
        self.assertEqual(devuelto["mensajes"][0]["identificador"], "43")
        self.assertEqual(devuelto["mensajes"][0]["mensaje"], "CLAVE ACCESO REGISTRADA")
        self.assertEqual(store.listar(Etapa.CONTINGENCIA), [])
