# core/celery.py
from __future__ import annotations

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "core.settings")

app = Celery("facturacion_sri")

# CELERY_* de core/settings.py: broker, serializadores y el beat que reintenta
# la cola de contingencia (CELERY_BEAT_SCHEDULE).
app.config_from_object("django.conf:settings", namespace="CELERY")

# Envío, consulta de autorización y contingencia viven en facturacion/tasks.py
app.autodiscover_tasks(["facturacion"])
