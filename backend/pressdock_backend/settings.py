"""
Django settings for pressdock_backend project.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_int(name: str, default: int) -> int:
    """Read an integer setting from the environment."""
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return int(value)


def env_float(name: str, default: float) -> float:
    """Read a float setting from the environment."""
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return float(value)


SECRET_KEY = os.environ.get('PRESSDOCK_SECRET_KEY', 'pressdock-dev-only-secret-key')

DEBUG = os.environ.get('PRESSDOCK_DEBUG', '1') == '1'

# The orchestrator is a local desktop service
ALLOWED_HOSTS = ['127.0.0.1', 'localhost']

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'websites',
    'environments',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
]

ROOT_URLCONF = 'pressdock_backend.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'pressdock_backend.wsgi.application'

PRESSDOCK_HOME = Path(os.environ.get('PRESSDOCK_HOME', Path.home() / 'PressDock'))

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('PRESSDOCK_DB_PATH', str(PRESSDOCK_HOME / 'pressdock.sqlite3')),
        'OPTIONS': {
            # Health monitor and site operations write from different threads
            'timeout': 20,
        },
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.AllowAny',
    ],
    'UNAUTHENTICATED_USER': None,
}

# PressDock orchestrator settings
PRESSDOCK_SITES_ROOT = os.environ.get('PRESSDOCK_SITES_ROOT', str(PRESSDOCK_HOME / 'sites'))
PRESSDOCK_LOG_DIR = os.environ.get('PRESSDOCK_LOG_DIR', str(PRESSDOCK_HOME / 'logs'))
PRESSDOCK_DEFAULT_ENVIRONMENT = os.environ.get('PRESSDOCK_DEFAULT_ENVIRONMENT', 'local')

PRESSDOCK_BIND_HOST = os.environ.get('PRESSDOCK_BIND_HOST', '127.0.0.1')
PRESSDOCK_PORT_RANGE_START = env_int('PRESSDOCK_PORT_RANGE_START', 8080)
PRESSDOCK_PORT_RANGE_END = env_int('PRESSDOCK_PORT_RANGE_END', 8999)

PRESSDOCK_WORKERS = env_int('PRESSDOCK_WORKERS', 8)
PRESSDOCK_START_TIMEOUT = env_float('PRESSDOCK_START_TIMEOUT', 120.0)
PRESSDOCK_STOP_TIMEOUT = env_float('PRESSDOCK_STOP_TIMEOUT', 10.0)
PRESSDOCK_COMMAND_TIMEOUT = env_float('PRESSDOCK_COMMAND_TIMEOUT', 300.0)

PRESSDOCK_HEALTH_INTERVAL = env_float('PRESSDOCK_HEALTH_INTERVAL', 15.0)
PRESSDOCK_HEALTH_TIMEOUT = env_float('PRESSDOCK_HEALTH_TIMEOUT', 3.0)
PRESSDOCK_HEALTH_FAILURE_THRESHOLD = env_int('PRESSDOCK_HEALTH_FAILURE_THRESHOLD', 3)

PRESSDOCK_MIGRATION_PROBE_ATTEMPTS = env_int('PRESSDOCK_MIGRATION_PROBE_ATTEMPTS', 10)
PRESSDOCK_MIGRATION_STEP_RETRIES = env_int('PRESSDOCK_MIGRATION_STEP_RETRIES', 2)

PRESSDOCK_PHP_BINARY = os.environ.get('PRESSDOCK_PHP_BINARY', 'php')
PRESSDOCK_DOCKER_BINARY = os.environ.get('PRESSDOCK_DOCKER_BINARY', 'docker')

# Shared local MySQL instance used by local sites with the mysql engine
PRESSDOCK_MYSQL_HOST = os.environ.get('PRESSDOCK_MYSQL_HOST', '127.0.0.1')
PRESSDOCK_MYSQL_PORT = env_int('PRESSDOCK_MYSQL_PORT', 3306)
PRESSDOCK_MYSQL_USER = os.environ.get('PRESSDOCK_MYSQL_USER', 'root')
PRESSDOCK_MYSQL_PASSWORD = os.environ.get('PRESSDOCK_MYSQL_PASSWORD', '')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
            'datefmt': '%Y-%m-%dT%H:%M:%S',
        },
        'simple': {
            'format': '%(levelname)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
            'level': 'INFO',
        },
        'file': {
            'class': 'pressdock_backend.log_handlers.LogDirRotatingFileHandler',
            'filename': os.path.join(PRESSDOCK_LOG_DIR, 'pressdock.log'),
            'maxBytes': 5 * 1024 * 1024,
            'backupCount': 3,
            'formatter': 'verbose',
            'level': 'DEBUG',
        },
    },
    'loggers': {
        'websites': {
            'handlers': ['console', 'file'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'environments': {
            'handlers': ['console', 'file'],
            'level': 'DEBUG',
            'propagate': False,
        },
    },
}
