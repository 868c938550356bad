# core/urls.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),

    # =========================
    # APIs (Facturación SRI)
    # =========================
    path("api/facturacion/", include("facturacion.urls", namespace="facturacion")),
]
