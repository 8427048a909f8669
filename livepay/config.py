import logging
import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DEFAULT_PLATFORM_FEE_PERCENT = 5


def database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    return url


def stripe_secret_key():
    return os.getenv("STRIPE_SECRET_KEY")


def webhook_secret():
    # read per request so a rotated secret is picked up without a restart
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def jwt_secret():
    return os.getenv("JWT_SECRET")


def platform_fee_percent() -> int:
    return int(os.getenv("PLATFORM_FEE_PERCENT", DEFAULT_PLATFORM_FEE_PERCENT))


def configure_logging():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
