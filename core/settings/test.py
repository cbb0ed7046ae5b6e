"""
Test settings
"""
from .base import *

DEBUG = False

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

PASSWORD_HASHERS = [
    'django.contrib.auth.hashers.MD5PasswordHasher',
]

POSTBACK_SECURE_HASH_KEY = 'test-postback-key'
POSTBACK_TEST_MODE_ENABLED = False
CRON_SECRET = 'test-cron-secret'
EMAIL_API_URL = 'https://email.test/emails'
EMAIL_API_KEY = 'test-email-key'
ENABLE_DRAW_SCHEDULER = False
