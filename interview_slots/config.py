# Runtime settings read from the environment. Production must set DATABASE_URL, STRIPE_API_KEY,
# STRIPE_WEBHOOK_SECRET and HASH_ADMIN.
import os
from decimal import Decimal

PRODUCTION = os.environ.get('FLASK_ENV') == 'production'

if PRODUCTION:
    DATABASE_URL = os.environ['DATABASE_URL']
else:
    DATABASE_URL = os.getenv('DATABASE_URL', 'dbname=interview_slots')

# Providers and requesters share one local zone; there is no per-user timezone handling.
TIMEZONE = os.getenv('TIMEZONE', 'UTC')

INTERVIEW_DURATION_MINUTES = int(os.getenv('INTERVIEW_DURATION_MINUTES', '60'))
MAX_BUFFER_MINUTES = int(os.getenv('MAX_BUFFER_MINUTES', '60'))
CANCELLATION_CUTOFF_HOURS = int(os.getenv('CANCELLATION_CUTOFF_HOURS', '24'))
MIN_CANCEL_REASON_LENGTH = int(os.getenv('MIN_CANCEL_REASON_LENGTH', '10'))

PLATFORM_COMMISSION_RATE = Decimal(os.getenv('PLATFORM_COMMISSION_RATE', '0.10'))
PLATFORM_ACCOUNT_ID = os.getenv('PLATFORM_ACCOUNT_ID', 'platform')

STRIPE_API_KEY = os.getenv('STRIPE_API_KEY')
STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET')
STRIPE_CURRENCY = os.getenv('STRIPE_CURRENCY', 'usd')
