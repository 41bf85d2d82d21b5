import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


class Settings:
    """Runtime settings read from the environment (and ``.env``)."""

    def __init__(self):
        self.mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
        self.db_name = os.environ.get('DB_NAME', 'talkcart')
        self.cors_origins = os.environ.get('CORS_ORIGINS', '*').split(',')
        self.session_ttl_days = int(os.environ.get('SESSION_TTL_DAYS', 7))
        self.commission_rate = float(os.environ.get('PLATFORM_COMMISSION_RATE', 0.10))
        self.log_level = os.environ.get('LOG_LEVEL', 'INFO')
        self.host = os.environ.get('HOST', '0.0.0.0')
        self.port = int(os.environ.get('PORT', 8001))

        # Payment providers
        self.flw_secret_hash = os.environ.get('FLW_SECRET_HASH')
        self.flw_secret_key = os.environ.get('FLW_SECRET_KEY')
        self.stripe_secret_key = os.environ.get('STRIPE_SECRET_KEY')
        self.stripe_webhook_secret = os.environ.get('STRIPE_WEBHOOK_SECRET')


settings = Settings()
