"""
Settings for the pytest run: in-memory SQLite, fast hashing, local email.
"""
from .settings import *  # noqa: F401,F403

DEBUG = False

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

IN_HOUSE_CLINIC_CODE = 'CL001'
SESSIONS_PER_VISIT = 1
RECENT_EVENTS_CAPACITY = 50

NOTIFICATION_ENABLED_EVENTS = []
NOTIFICATION_EMAIL_RECIPIENTS = []
NOTIFICATION_CHAT_ACCESS_TOKEN = ''
NOTIFICATION_CHAT_TARGET_ID = ''
