"""
Django settings for fees_ledger project.

Scope:
- Academic sessions and the current-session pointer
- Student roster and class progression
- Transport routes and enrollment history
- Fee structures, student ledger and receipts
- Session promotion and revert
"""
import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


DEBUG = os.getenv('DJANGO_DEBUG', 'False').lower() in {'1', 'true', 'yes'}
SECRET_KEY = os.getenv(
    'DJANGO_SECRET_KEY',
    'change-this-secret-key-in-production-8c1d2e7f55b94a0e9d3c6b1a2f4e7d90',
)
ALLOWED_HOSTS = [
    host.strip()
    for host in os.getenv('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')
    if host.strip()
]


INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'apps.core.schools.apps.SchoolsConfig',
    'apps.core.academic_sessions.apps.AcademicSessionsConfig',
    'apps.core.students.apps.StudentsConfig',
    'apps.core.transport.apps.TransportConfig',
    'apps.core.fees.apps.FeesConfig',
    'apps.core.promotions.apps.PromotionsConfig',
]


DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.getenv('DJANGO_DB_PATH', str(BASE_DIR / 'db.sqlite3')),
    }
}


LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.getenv('DJANGO_TIME_ZONE', 'Asia/Kolkata')
USE_I18N = True
USE_TZ = True


LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'standard': {
            'format': '%(asctime)s %(levelname)s %(name)s %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'standard',
        },
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': os.getenv('FEES_LOG_LEVEL', 'INFO').upper(),
            'propagate': False,
        },
    },
}


TEST_RUNNER = 'apps.core.test_runner.InstalledAppsOnlyDiscoverRunner'

FEES_BATCH_SIZE = int(os.getenv('FEES_BATCH_SIZE', '50'))
FEES_GRADUATE_PREFIX = os.getenv('FEES_GRADUATE_PREFIX', 'PASS')
