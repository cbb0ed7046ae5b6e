"""
Development settings
"""
from .base import *

DEBUG = True

ALLOWED_HOSTS = ['*']

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

POSTBACK_TEST_MODE_ENABLED = os.getenv('POSTBACK_TEST_MODE_ENABLED', 'True') == 'True'
