# facturacion/tasks.py
from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task
from django.conf import settings

from facturacion.services.sri.errors import DocumentInProgress, SRIError
from facturacion.services.sri.workflow import Pending, get_orchestrator

logger = logging.getLogger(__name__)


# =====================================================
# Tarea: Envío a Recepción SRI en background
# =====================================================


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def enviar_comprobante_task(self, clave_acceso: str) -> Dict[str, Any]:
    """
    Envía a Recepción el comprobante firmado guardado en firmados/.

    - Si el SRI lo RECIBIÓ, agenda consultar_autorizacion_task con
      countdown SRI_SETTLE_DELAY (no se duerme el worker).
    - Si otro proceso tiene el lock de la clave, reintenta más tarde.
    - Los errores de transporte ya dejaron copia en contingencia/.
    """
    logger.info("enviar_comprobante_task iniciado para clave=%s", clave_acceso)
    orchestrator = get_orchestrator()

    try:
        report = orchestrator.send_stored(clave_acceso)
    except DocumentInProgress as exc:
        if self.request.retries < self.max_retries:
            countdown = 60 * (2**self.request.retries)
            raise self.retry(exc=exc, countdown=countdown)
        return {"ok": False, "error": str(exc)}
    except FileNotFoundError:
        logger.error("enviar_comprobante_task: no existe firmados/%s.xml", clave_acceso)
        return {"ok": False, "error": "ComprobanteNoFirmado"}

    if isinstance(report, Pending):
        settle = int(getattr(settings, "SRI_SETTLE_DELAY", 3))
        consultar_autorizacion_task.apply_async(args=[clave_acceso], countdown=settle)
        logger.info(
            "Comprobante %s RECIBIDA; consulta de autorización en %s segundos.",
            clave_acceso,
            settle,
        )

    resultado = report.as_dict()
    logger.info(
        "enviar_comprobante_task finalizado para clave=%s, estado=%s",
        clave_acceso,
        resultado.get("estado"),
    )
    return resultado


# =====================================================
# Tarea: Autorización SRI en background (con backoff)
# =====================================================


@shared_task(
    bind=True,
    max_retries=6,
    default_retry_delay=60,  # no se usa directamente; hacemos nuestro propio backoff
)
def consultar_autorizacion_task(self, clave_acceso: str) -> Dict[str, Any]:
    """
    Consulta la autorización del comprobante.

    Si el SRI lo deja EN PROCESO, reprograma esta misma tarea con backoff
    exponencial: 1, 2, 4, 8, 16, 32 minutos (hasta max_retries).
    """
    logger.info("consultar_autorizacion_task iniciado para clave=%s", clave_acceso)

    try:
        report = get_orchestrator().check_status(clave_acceso)
    except DocumentInProgress as exc:
        if self.request.retries < self.max_retries:
            countdown = 60 * (2**self.request.retries)
            raise self.retry(exc=exc, countdown=countdown)
        return {"ok": False, "error": str(exc)}
    except SRIError as exc:
        logger.error("consultar_autorizacion_task: %s (%s)", exc, clave_acceso)
        return {"ok": False, "error": str(exc)}

    if isinstance(report, Pending) and self.request.retries < self.max_retries:
        countdown = 60 * (2**self.request.retries)  # 1m, 2m, 4m, 8m, ...
        logger.info(
            "Comprobante %s EN PROCESO, reintento consultar_autorizacion_task en %s segundos.",
            clave_acceso,
            countdown,
        )
        raise self.retry(countdown=countdown)

    resultado = report.as_dict()
    logger.info(
        "consultar_autorizacion_task finalizado para clave=%s, estado=%s",
        clave_acceso,
        resultado.get("estado"),
    )
    return resultado


# =====================================================
# Tarea: Reintento de contingencia (celery beat)
# =====================================================


@shared_task
def reintentar_contingencia_task() -> Dict[str, Any]:
    """
    Reenvía los pendientes de contingencia/. Solo los RECIBIDA agendan la
    consulta de autorización; los DEVUELTA y las respuestas no reconocidas
    se devuelven con los mensajes del SRI.
    """
    reports = get_orchestrator().retry_pending()
    enviados = [r.clave_acceso for r in reports if isinstance(r, Pending)]
    settle = int(getattr(settings, "SRI_SETTLE_DELAY", 3))
    for clave in enviados:
        consultar_autorizacion_task.apply_async(args=[clave], countdown=settle)

    logger.info(
        "reintentar_contingencia_task: %s respuestas, %s RECIBIDA.",
        len(reports),
        len(enviados),
    )
    return {"ok": True, "enviados": enviados, "resultados": [r.as_dict() for r in reports]}
