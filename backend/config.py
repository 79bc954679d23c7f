"""
Configuration et utilitaires partagés
"""

import os
import secrets
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'lead_backoffice')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

print(f"[CONFIG] Using database: {DB_NAME}")

# Carrier-type lookup (numverify / apilayer)
NUMVERIFY_API_URL = os.environ.get('NUMVERIFY_API_URL', 'http://apilayer.net/api/validate')
NUMVERIFY_API_KEY = os.environ.get('NUMVERIFY_API_KEY', '')
MOBILE_LOOKUP_TIMEOUT = float(os.environ.get('MOBILE_LOOKUP_TIMEOUT', '5'))
MOBILE_LOOKUP_MAX_ATTEMPTS = int(os.environ.get('MOBILE_LOOKUP_MAX_ATTEMPTS', '10'))

# Postbacks
POSTBACK_TIMEOUT = float(os.environ.get('POSTBACK_TIMEOUT', '30'))
POSTBACK_TEST_TIMEOUT = float(os.environ.get('POSTBACK_TEST_TIMEOUT', '15'))

# Diagnostic log files (phone formatting, duplicate detection)
DIAGNOSTIC_LOG_DIR = Path(os.environ.get('DIAGNOSTIC_LOG_DIR', str(ROOT_DIR / 'logs_scripts')))

# "accept" stores the raw phone when normalization fails, "reject" refuses the lead
API_PHONE_FAILURE_POLICY = os.environ.get('API_PHONE_FAILURE_POLICY', 'accept').lower()

# Shopify webhooks
SHOPIFY_API_SECRET = os.environ.get('SHOPIFY_API_SECRET', '')

# Primary market
PHONE_COUNTRY_CODE = 'AR'
DEFAULT_COUNTRY = os.environ.get('DEFAULT_COUNTRY', 'Argentina')


# ==================== HELPERS ====================

def generate_api_key() -> str:
    """Génère une clé API affilié"""
    return f"lk_{secrets.token_urlsafe(32)}"


def utc_now() -> datetime:
    """Horloge serveur (UTC, timezone-aware)"""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """
    Format ISO stable pour les dates stockées en base.
    Toujours en UTC avec microsecondes pour que la comparaison
    lexicographique des chaînes suive l'ordre chronologique.
    """
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return to_iso(utc_now())


def timestamp() -> int:
    """Retourne le timestamp actuel"""
    return int(utc_now().timestamp())


CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Arrondi monétaire à 2 décimales"""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def local_day(now: datetime) -> str:
    """Jour calendaire (heure locale serveur) au format YYYY-MM-DD"""
    return now.astimezone().date().isoformat()


def local_day_bounds(now: datetime) -> tuple:
    """
    Fenêtre du jour local courant: 00:00:00.000 → 23:59:59.999,
    renvoyée en ISO UTC pour comparaison avec created_at.
    """
    local = now.astimezone()
    start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    end = local.replace(hour=23, minute=59, second=59, microsecond=999000)
    return to_iso(start), to_iso(end)
