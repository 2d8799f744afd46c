from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

PUBLIC_BASE_URL = 'https://rsdf.test'
LENCO_BASE_URL = 'https://lenco.test'
LENCO_API_SECRET = 'test-secret'
LENCO_API_KEY = 'pub-test'
LENCO_WEBHOOK_SECRET = 'whsec-test'
LENCO_CURRENCY = 'NGN'
LENCO_DISPLAY_CURRENCY = 'USD'
LENCO_TIMEOUT = 5
LENCO_MOCK_MODE = False
