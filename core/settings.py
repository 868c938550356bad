import os
import sys
from pathlib import Path
from dotenv import load_dotenv  # Cargador de secretos

BASE_DIR = Path(__file__).resolve().parent.parent

# --- CARGAR VARIABLES DE ENTORNO ---
# Carga el archivo .env desde la raíz del proyecto
load_dotenv(BASE_DIR / '.env')


def _env_bool(name, default=False):
    return os.getenv(name, str(default)).strip().lower() in ('1', 'true', 'yes', 'si', 'sí')


# --- SEGURIDAD ---
SECRET_KEY = os.getenv('SECRET_KEY', 'dev-insecure-facturacion-sri')
DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
ALLOWED_HOSTS = [h for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

# -------------------------------------------------
# Apps Instaladas
# -------------------------------------------------
APPEND_SLASH = True

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    'rest_framework',

    # Facturación electrónica SRI
    'facturacion',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'
WSGI_APPLICATION = 'core.wsgi.application'

LANGUAGE_CODE = 'es-ec'
TIME_ZONE = 'America/Guayaquil'
USE_I18N = True
USE_TZ = True

# --- Base de datos ---
# Los comprobantes viven en disco (SRI_STORAGE_ROOT); la BD solo sostiene auth/sesiones.
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.getenv('DATABASE_NAME', str(BASE_DIR / 'db.sqlite3')),
    }
}

# --- Cache (locks por clave de acceso) ---
# Web y workers de Celery comparten el lock: el cache vive en el mismo Redis
# que el broker. Las corridas de tests son de un solo proceso y usan locmem.
REDIS_URL = os.getenv('REDIS_URL') or os.getenv('CELERY_BROKER_URL') or 'redis://localhost:6379/0'
TESTING = (len(sys.argv) > 1 and sys.argv[1] == 'test') or 'pytest' in sys.modules


def _caches(testing):
    if testing:
        return {
            'default': {
                'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
                'LOCATION': 'facturacion-sri-tests',
            }
        }
    return {
        'default': {
            'BACKEND': os.getenv('CACHE_BACKEND', 'django.core.cache.backends.redis.RedisCache'),
            'LOCATION': os.getenv('CACHE_LOCATION', REDIS_URL),
        }
    }


CACHES = _caches(TESTING)

# --- DRF ---
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
}

# --- Templates ---
TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# -------------------------------------------------
# SRI – Facturación electrónica
# -------------------------------------------------
# 1 = pruebas (celcer), 2 = producción (cel)
SRI_AMBIENTE = os.getenv('SRI_AMBIENTE', '1')
SRI_TIPO_EMISION = os.getenv('SRI_TIPO_EMISION', '1')

# Emisor
SRI_EMISOR_RUC = os.getenv('SRI_EMISOR_RUC', '1790012344001')
SRI_EMISOR_RAZON_SOCIAL = os.getenv('SRI_EMISOR_RAZON_SOCIAL', 'EMPRESA DE PRUEBAS S.A.')
SRI_EMISOR_NOMBRE_COMERCIAL = os.getenv('SRI_EMISOR_NOMBRE_COMERCIAL', '')
SRI_EMISOR_DIR_MATRIZ = os.getenv('SRI_EMISOR_DIR_MATRIZ', 'Av. Amazonas N00-00, Quito')
SRI_EMISOR_DIR_ESTABLECIMIENTO = os.getenv('SRI_EMISOR_DIR_ESTABLECIMIENTO', '')
SRI_EMISOR_CONTRIBUYENTE_ESPECIAL = os.getenv('SRI_EMISOR_CONTRIBUYENTE_ESPECIAL', '')
SRI_EMISOR_OBLIGADO_CONTABILIDAD = _env_bool('SRI_EMISOR_OBLIGADO_CONTABILIDAD', False)
SRI_EMISOR_AGENTE_RETENCION = os.getenv('SRI_EMISOR_AGENTE_RETENCION', '')
SRI_EMISOR_RIMPE = _env_bool('SRI_EMISOR_RIMPE', False)
SRI_ESTABLECIMIENTO = os.getenv('SRI_ESTABLECIMIENTO', '001')
SRI_PUNTO_EMISION = os.getenv('SRI_PUNTO_EMISION', '001')

# Firma electrónica (.p12)
SRI_CERT_PATH = os.getenv('SRI_CERT_PATH', str(BASE_DIR / 'certificados' / 'firma.p12'))
SRI_CERT_PASSWORD = os.getenv('SRI_CERT_PASSWORD', '')

# Web Services Offline
SRI_TEST_RECEPCION_WSDL = os.getenv(
    'SRI_TEST_RECEPCION_WSDL',
    'https://celcer.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline?wsdl',
)
SRI_TEST_AUTORIZACION_WSDL = os.getenv(
    'SRI_TEST_AUTORIZACION_WSDL',
    'https://celcer.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline?wsdl',
)
SRI_PROD_RECEPCION_WSDL = os.getenv(
    'SRI_PROD_RECEPCION_WSDL',
    'https://cel.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline?wsdl',
)
SRI_PROD_AUTORIZACION_WSDL = os.getenv(
    'SRI_PROD_AUTORIZACION_WSDL',
    'https://cel.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline?wsdl',
)
SRI_SSL_VERIFY = _env_bool('SRI_SSL_VERIFY', False)
SRI_REQUEST_TIMEOUT = int(os.getenv('SRI_REQUEST_TIMEOUT', 30))

# Reintentos / esperas (segundos)
SRI_RETRY_MAX = int(os.getenv('SRI_RETRY_MAX', 3))
SRI_RETRY_DELAY = float(os.getenv('SRI_RETRY_DELAY', 3))
SRI_SETTLE_DELAY = float(os.getenv('SRI_SETTLE_DELAY', 3))
SRI_LOCK_TIMEOUT = int(os.getenv('SRI_LOCK_TIMEOUT', 300))

# Almacenamiento y esquemas
SRI_STORAGE_ROOT = Path(os.getenv('SRI_STORAGE_ROOT', str(BASE_DIR / 'comprobantes')))
SRI_XSD_DIR = Path(os.getenv('SRI_XSD_DIR', str(BASE_DIR / 'facturacion' / 'services' / 'sri' / 'xsd')))

# Rango de fecha de emisión (90 días atrás / 1 adelante) en la API
SRI_VALIDAR_RANGO_FECHA = _env_bool('SRI_VALIDAR_RANGO_FECHA', True)

# -------------------------------------------------
# Celery
# -------------------------------------------------
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', REDIS_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool('CELERY_TASK_ALWAYS_EAGER', False)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    'reintentar-contingencia-sri': {
        'task': 'facturacion.tasks.reintentar_contingencia_task',
        'schedule': float(os.getenv('SRI_CONTINGENCIA_INTERVALO', 300)),
    },
}

# --- LOGGING ---
LOG_DIR = BASE_DIR / 'logs'
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'file': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_DIR / 'facturacion.log',
            'maxBytes': 1024 * 1024 * 5,  # 5MB
            'backupCount': 5,
            'formatter': 'verbose',
            'encoding': 'utf-8',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
            'propagate': True,
        },
        'facturacion': {
            'handlers': ['console', 'file'],
            'level': os.getenv('FACTURACION_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
