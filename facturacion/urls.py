# facturacion/urls.py
# -*- coding: utf-8 -*-
"""
Rutas de la API de facturación electrónica SRI.

Se incluye desde core/urls.py así:
    path("api/facturacion/", include("facturacion.urls", namespace="facturacion"))

- POST facturas/                                 emisión de factura
- POST notas-credito/                            emisión de nota de crédito
- GET  comprobantes/<clave>/estado/              consulta de autorización
- GET  comprobantes/<clave>/autorizado/          sobre autorizado guardado
- POST contingencia/reintentar/                  reenvío de contingencia

Los POST de emisión aceptan ?async=1 (envío por Celery).
"""

from __future__ import annotations

from django.urls import path

from .views import (
    AutorizadoView,
    ContingenciaReintentarView,
    EstadoView,
    FacturaView,
    NotaCreditoView,
)

app_name = "facturacion"

urlpatterns = [
    path("facturas/", FacturaView.as_view(), name="factura"),
    path("notas-credito/", NotaCreditoView.as_view(), name="nota-credito"),
    path(
        "comprobantes/<str:clave_acceso>/estado/",
        EstadoView.as_view(),
        name="comprobante-estado",
    ),
    path(
        "comprobantes/<str:clave_acceso>/autorizado/",
        AutorizadoView.as_view(),
        name="comprobante-autorizado",
    ),
    path(
        "contingencia/reintentar/",
        ContingenciaReintentarView.as_view(),
        name="contingencia-reintentar",
    ),
]
