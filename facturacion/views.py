# facturacion/views.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from typing import Any, Dict

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from facturacion.serializers import FacturaInputSerializer, NotaCreditoInputSerializer
from facturacion.services.sri.errors import (
    CertificateError,
    DocumentInProgress,
    PreconditionError,
    XSDValidationError,
)
from facturacion.services.sri.storage import DocumentStore
from facturacion.services.sri.workflow import OutcomeReport, Pending, get_orchestrator, match_outcome
from facturacion.tasks import enviar_comprobante_task, reintentar_contingencia_task
from facturacion.utils import validar_clave_acceso

logger = logging.getLogger(__name__)


def respuesta_outcome(report: OutcomeReport) -> Response:
    """
    OutcomeReport -> HTTP:

    - Authorized 200, Pending 202
    - Denied / NotReceived 422 (el SRI rechazó el comprobante)
    - TransportError 503, UnexpectedResponse 502
    """
    return match_outcome(
        report,
        authorized=lambda r: Response(r.as_dict(), status=status.HTTP_200_OK),
        pending=lambda r: Response(r.as_dict(), status=status.HTTP_202_ACCEPTED),
        denied=lambda r: Response(r.as_dict(), status=status.HTTP_422_UNPROCESSABLE_ENTITY),
        not_received=lambda r: Response(r.as_dict(), status=status.HTTP_422_UNPROCESSABLE_ENTITY),
        transport_error=lambda r: Response(r.as_dict(), status=status.HTTP_503_SERVICE_UNAVAILABLE),
        unexpected=lambda r: Response(r.as_dict(), status=status.HTTP_502_BAD_GATEWAY),
    )


def _error_payload(exc: Exception) -> Dict[str, Any]:
    data: Dict[str, Any] = {"detail": str(exc)}
    kind = getattr(exc, "kind", None)
    if kind is not None:
        data["tipo"] = kind.value
    if isinstance(exc, XSDValidationError):
        data["errores"] = exc.errores
    return data


class SRIBaseView(APIView):
    """
    Base de los endpoints SRI.

    - Requiere autenticación.
    - Traduce las excepciones del flujo SRI a respuestas HTTP.
    """

    permission_classes = [IsAuthenticated]

    def _get_bool_param(self, request, name: str, *, default: bool = False) -> bool:
        """
        Valores válidos (true): 1, true, t, yes, y, si, sí (case-insensitive).
        """
        raw = request.query_params.get(name)
        if raw is None:
            return default
        return raw.strip().lower() in {"1", "true", "t", "yes", "y", "si", "sí"}

    def _clave_invalida(self, clave_acceso: str):
        if validar_clave_acceso(clave_acceso):
            return None
        return Response(
            {"detail": "Clave de acceso inválida (49 dígitos con verificador módulo 11)."},
            status=status.HTTP_400_BAD_REQUEST,
        )

    def handle_exception(self, exc):
        if isinstance(exc, DocumentInProgress):
            return Response(_error_payload(exc), status=status.HTTP_409_CONFLICT)
        if isinstance(exc, PreconditionError):
            return Response(_error_payload(exc), status=status.HTTP_400_BAD_REQUEST)
        if isinstance(exc, CertificateError):
            logger.error("Error de certificado de firma: %s", exc)
            return Response(
                {
                    **_error_payload(exc),
                    "detail": (
                        f"No se pudo usar el certificado de firma electrónica: {exc}. "
                        "Revisa SRI_CERT_PATH / SRI_CERT_PASSWORD."
                    ),
                },
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return super().handle_exception(exc)


# =========================
# Emisión
# =========================


class ComprobanteCreateView(SRIBaseView):
    """
    POST: valida la entrada, construye, firma y envía el comprobante.

    - Por defecto es síncrono: responde con el OutcomeReport final.
    - Con ?async=1 solo construye y firma; el envío queda en Celery
      (enviar_comprobante_task) y se responde 202 con la clave de acceso.
    """

    serializer_class = None

    def post(self, request, *args, **kwargs):
        serializer = self.serializer_class(data=request.data)
        serializer.is_valid(raise_exception=True)

        builder = serializer.to_builder()
        orchestrator = get_orchestrator()

        if self._get_bool_param(request, "async"):
            signed = orchestrator.prepare(builder)
            enviar_comprobante_task.delay(signed.clave_acceso)
            logger.info("Comprobante %s encolado para envío.", signed.clave_acceso)
            return Response(
                {"estado": "ENCOLADO", "clave_acceso": signed.clave_acceso},
                status=status.HTTP_202_ACCEPTED,
            )

        return respuesta_outcome(orchestrator.submit(builder))


class FacturaView(ComprobanteCreateView):
    serializer_class = FacturaInputSerializer


class NotaCreditoView(ComprobanteCreateView):
    serializer_class = NotaCreditoInputSerializer


# =========================
# Consulta
# =========================


class EstadoView(SRIBaseView):
    """GET: consulta la autorización en el SRI (idempotente)."""

    def get(self, request, clave_acceso: str, *args, **kwargs):
        invalida = self._clave_invalida(clave_acceso)
        if invalida is not None:
            return invalida
        return respuesta_outcome(get_orchestrator().check_status(clave_acceso))


class AutorizadoView(SRIBaseView):
    """GET: sobre de autorización persistido (insumo del RIDE)."""

    def get(self, request, clave_acceso: str, *args, **kwargs):
        invalida = self._clave_invalida(clave_acceso)
        if invalida is not None:
            return invalida
        try:
            autorizado = DocumentStore().leer_autorizado(clave_acceso)
        except FileNotFoundError:
            return Response(
                {"detail": f"El comprobante {clave_acceso} no está autorizado."},
                status=status.HTTP_404_NOT_FOUND,
            )
        return Response(autorizado.as_dict(), status=status.HTTP_200_OK)


# =========================
# Contingencia
# =========================


class ContingenciaReintentarView(SRIBaseView):
    """
    POST: reenvía los comprobantes en contingencia/.
    Con ?async=1 delega en reintentar_contingencia_task.
    """

    def post(self, request, *args, **kwargs):
        if self._get_bool_param(request, "async"):
            reintentar_contingencia_task.delay()
            return Response({"estado": "ENCOLADO"}, status=status.HTTP_202_ACCEPTED)

        reports = get_orchestrator().retry_pending()
        return Response(
            {
                "enviados": [r.clave_acceso for r in reports if isinstance(r, Pending)],
                "resultados": [r.as_dict() for r in reports],
            },
            status=status.HTTP_200_OK,
        )
