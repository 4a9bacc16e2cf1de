from .settings import *
import os
from dotenv import load_dotenv
load_dotenv(os.path.join(BASE_DIR, '..', '.env'))

DEBUG = False
SECRET_KEY = os.environ["DJANGO_SECRET_KEY"]
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(',')
CORS_ALLOW_ALL_ORIGINS = False
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000").split(',')

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels_redis.core.RedisChannelLayer",
        "CONFIG": {
            "hosts": [os.getenv("REDIS_URL", "redis://localhost:6379/0")],
        },
    }
}

# Re-read after .env is loaded
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
RELAY_BACKEND_BASE_URL = os.getenv("BACKEND_BASE_URL", RELAY_BACKEND_BASE_URL)
RELAY_BACKEND_TIMEOUT = env_float(os.getenv("BACKEND_TIMEOUT")) or RELAY_BACKEND_TIMEOUT
LOGGING["root"]["level"] = os.getenv("LOG_LEVEL", "INFO").upper()
RELAY_DEFAULT_RADIUS_METERS = int(os.getenv("DEFAULT_RADIUS_METERS", RELAY_DEFAULT_RADIUS_METERS))
RELAY_CONFIRM_POLL_ATTEMPTS = int(os.getenv("CONFIRM_POLL_ATTEMPTS", RELAY_CONFIRM_POLL_ATTEMPTS))
RELAY_CONFIRM_POLL_INTERVAL = float(os.getenv("CONFIRM_POLL_INTERVAL", RELAY_CONFIRM_POLL_INTERVAL))
