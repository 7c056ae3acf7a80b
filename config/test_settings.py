"""
Settings used by the test suite.

SQLite in memory unless POSTGRES_DB is set, which enables the
row-locking tests.
"""
import os

from .settings import *  # noqa: F401,F403

if not os.environ.get('POSTGRES_DB'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': ':memory:',
        }
    }

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

RATE_LIMIT_ENABLED = False
ALLOW_NEGATIVE_STOCK = False
LOW_STOCK_THRESHOLD = 10

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'

for _app in ('core', 'inventory', 'orders'):
    LOGGING['loggers'][_app]['level'] = 'WARNING'  # noqa: F405
