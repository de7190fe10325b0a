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

KHALTI = {
    'BASE_URL': 'https://gateway.test/api/v2',
    'SECRET_KEY': 'test-secret',
    'WEBSITE_URL': 'https://shop.test',
    'CALLBACK_BASE_URL': 'https://shop.test',
    'TIMEOUT': 5,
    'LOOKUP_ON_CALLBACK': False,
}

PAYMENTS_SUCCESS_URL = '/payment/success/'
PAYMENTS_FAILURE_URL = '/payment/failure/'
