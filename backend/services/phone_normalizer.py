"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Phone Normalizer - Numéros argentins                                        ║
║                                                                              ║
║  FORMAT EN BASE: indicatif + [15 si mobile] + abonné                         ║
║    ex: 1123456789 (fixe CABA)   →  1123456789                                ║
║        1123456789 (mobile CABA) →  111523456789                              ║
║                                                                              ║
║  Pipeline:                                                                   ║
║    1. Garder uniquement les chiffres                                         ║
║    2. Réductions successives: +54, 0 de trunk, 9 mobile international        ║
║    3. Longueur: 10 OK / 8 → préfixe 11 / 12 → retirer le "15" embarqué       ║
║    4. 15XXXXXXXX → 11XXXXXXXX                                                ║
║    5. Lookup mobile (numverify, best-effort, retry borné)                    ║
║    6. Assemblage indicatif 4 → 3 → 2 chiffres + marqueur mobile              ║
║    7. Validation finale contre la table d'indicatifs                         ║
║                                                                              ║
║  Ne lève jamais d'exception: tout échec → is_valid=False + raison            ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Optional, Dict, Any

import httpx

from config import (
    NUMVERIFY_API_URL,
    NUMVERIFY_API_KEY,
    MOBILE_LOOKUP_TIMEOUT,
    MOBILE_LOOKUP_MAX_ATTEMPTS,
    PHONE_COUNTRY_CODE,
)
from services.area_codes import AreaCodeTable, DEFAULT_AREA_CODES
from services.diagnostic_log import DiagnosticLog

logger = logging.getLogger("phone_normalizer")

COUNTRY_CALLING_CODE = "54"
TRUNK_PREFIX = "0"
MOBILE_INDICATOR = "9"
MOBILE_MARKER = "15"
CAPITAL_AREA_CODE = "11"
NATIONAL_LENGTH = 10

# Chaque règle retire au moins un chiffre: la boucle termine toujours.
# Le plafond protège contre une future règle qui ne réduirait pas.
MAX_REDUCTION_STEPS = 32

REDUCTION_RULES = [
    ("country_code", lambda d: len(d) > 9 and d.startswith(COUNTRY_CALLING_CODE), len(COUNTRY_CALLING_CODE)),
    ("trunk_prefix", lambda d: len(d) > 8 and d.startswith(TRUNK_PREFIX), 1),
    ("mobile_indicator", lambda d: len(d) > 8 and d.startswith(MOBILE_INDICATOR), 1),
]

# Types de fichiers de diagnostic
LOG_NULL = "formatPhone_NULL_new"
LOG_AREA_CODE_FAIL = "formatPhone_AreaCode_Fail"
LOG_ERROR = "formatPhone_Error"
LOG_COUNTRY = "formatPhone_Country"
LOG_OK = "formatPhone_OK"
LOG_IS_MOBILE = "ismobile"
LOG_APILAYER = "apilayer_debug"


def clean_phone(phone: Optional[str]) -> str:
    """Supprime tous les caractères non numériques"""
    if not phone:
        return ""
    return "".join(filter(str.isdigit, str(phone)))


def reduce_national(digits: str) -> str:
    """Applique les règles de réduction jusqu'à stabilité"""
    for _ in range(MAX_REDUCTION_STEPS):
        for name, applies, strip in REDUCTION_RULES:
            if applies(digits):
                digits = digits[strip:]
                break
        else:
            return digits
    logger.warning(f"[PHONE] Reduction cap reached, remaining={len(digits)} digits")
    return digits


def check_quince(phone: str) -> str:
    """15XXXXXXXX (marqueur mobile sans indicatif) → 11XXXXXXXX"""
    if phone.startswith(MOBILE_MARKER) and len(phone) >= NATIONAL_LENGTH:
        return CAPITAL_AREA_CODE + phone[2:]
    return phone


class PhoneNormalizationResult:
    """Résultat de la normalisation d'un numéro"""

    def __init__(
        self,
        is_valid: bool,
        original_phone: str,
        formatted_phone: Optional[str],
        cleaned_phone: str,
        is_mobile: Optional[bool] = None,
        error_reason: Optional[str] = None,
    ):
        self.is_valid = is_valid
        self.original_phone = original_phone
        self.formatted_phone = formatted_phone
        self.cleaned_phone = cleaned_phone
        self.is_mobile = is_mobile
        self.error_reason = error_reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "original_phone": self.original_phone,
            "formatted_phone": self.formatted_phone,
            "cleaned_phone": self.cleaned_phone,
            "is_mobile": self.is_mobile,
            "error_reason": self.error_reason,
        }


# ==================== LOOKUP MOBILE ====================

class MobileLookup:
    """
    Lookup du type de ligne via numverify.

    Best-effort: timeout par appel, nombre de tentatives plafonné.
    Tentatives épuisées ou clé absente → False (jamais d'exception).
    """

    def __init__(
        self,
        api_url: str = NUMVERIFY_API_URL,
        api_key: str = NUMVERIFY_API_KEY,
        timeout: float = MOBILE_LOOKUP_TIMEOUT,
        max_attempts: int = MOBILE_LOOKUP_MAX_ATTEMPTS,
        diagnostics: Optional[DiagnosticLog] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.diagnostics = diagnostics or DiagnosticLog()
        self._transport = transport

    async def is_mobile(self, phone: str, country_code: str = PHONE_COUNTRY_CODE) -> bool:
        if not self.api_key:
            logger.debug("[PHONE] No numverify key configured, mobile lookup skipped")
            return False

        params = {
            "access_key": self.api_key,
            "number": phone,
            "country_code": country_code,
            "format": 1,
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.max_attempts):
                try:
                    resp = await client.get(self.api_url, params=params)
                except httpx.HTTPError as e:
                    self.diagnostics.write(LOG_IS_MOBILE, f"ERROR: {e!r} - {phone} - attempt {attempt}")
                    continue

                self.diagnostics.write(LOG_IS_MOBILE, f"StatusCode: [{resp.status_code}] - {phone} - attempt {attempt}")
                if resp.status_code != 200:
                    continue

                try:
                    data = resp.json()
                except ValueError:
                    self.diagnostics.write(LOG_APILAYER, f"{phone},ERROR,Invalid JSON,NA")
                    continue

                if not isinstance(data, dict):
                    self.diagnostics.write(LOG_APILAYER, f"{phone},ERROR,Unexpected body {type(data).__name__},NA")
                    continue

                if data.get("valid") is not None and data.get("line_type") is not None:
                    self.diagnostics.write(LOG_APILAYER, f"{phone},{data.get('valid')},{data.get('line_type')}")
                else:
                    self.diagnostics.write(LOG_APILAYER, f"{phone},ERROR,No valid in response,NA")

                try:
                    return self._interpret(data, country_code)
                except (TypeError, ValueError, AttributeError) as e:
                    self.diagnostics.write(LOG_APILAYER, f"{phone},ERROR,{e!r},NA")
                    continue

        self.diagnostics.write(LOG_IS_MOBILE, f"Max retries reached for {phone}")
        logger.warning(f"[PHONE] Mobile lookup exhausted after {self.max_attempts} attempts")
        return False

    @staticmethod
    def _interpret(data: Dict[str, Any], country_code: str) -> bool:
        if country_code == "AR":
            # +549XXXXXXXXXX: le 9 après l'indicatif pays signale un mobile
            international = clean_phone(str(data.get("international_format") or ""))
            return international.startswith(COUNTRY_CALLING_CODE + MOBILE_INDICATOR)
        if country_code == "MX":
            return data.get("valid") is True
        return False


# ==================== NORMALIZER ====================

class PhoneNormalizer:
    """Normalisation + validation des numéros du marché principal"""

    def __init__(
        self,
        area_codes: AreaCodeTable = DEFAULT_AREA_CODES,
        mobile_lookup: Optional[MobileLookup] = None,
        diagnostics: Optional[DiagnosticLog] = None,
    ):
        self.area_codes = area_codes
        self.diagnostics = diagnostics or DiagnosticLog()
        self.mobile_lookup = mobile_lookup or MobileLookup(diagnostics=self.diagnostics)

    def reduce(
        self,
        raw_phone: Optional[str],
        affiliate_id: str = "NODEF",
        publisher_id: str = "NODEF",
    ) -> Optional[str]:
        """
        Nettoyage + réduction + contrôle de longueur.
        Retourne le numéro national à 10 chiffres, ou None.
        """
        original = raw_phone or ""
        phone = reduce_national(clean_phone(original))
        length = len(phone)

        if length == NATIONAL_LENGTH:
            return phone

        if length == 8:
            return CAPITAL_AREA_CODE + phone

        if length == 12:
            pos = phone.find(MOBILE_MARKER)
            if pos != -1:
                return phone[:pos] + phone[pos + 2:]

        self.diagnostics.write(LOG_NULL, f"{affiliate_id},{publisher_id},{phone},{original},{length} digits")
        return None

    def assemble(self, national: str, is_mobile: bool) -> str:
        """Indicatif (4 → 3 → 2 chiffres) + marqueur mobile + abonné"""
        marker = MOBILE_MARKER if is_mobile else ""
        if self.area_codes.contains(national[:4]):
            area = national[:4]
        elif self.area_codes.contains(national[:3]):
            area = national[:3]
        else:
            area = national[:2]
        return area + marker + national[len(area):NATIONAL_LENGTH]

    async def normalize(
        self,
        raw_phone: Optional[str],
        country_code: str = PHONE_COUNTRY_CODE,
        affiliate_id: str = "NODEF",
        publisher_id: str = "NODEF",
    ) -> PhoneNormalizationResult:
        original = raw_phone or ""
        cleaned = clean_phone(original)

        if (country_code or "").upper() != PHONE_COUNTRY_CODE:
            self.diagnostics.write(LOG_COUNTRY, f"{affiliate_id},{publisher_id},{original},{country_code}")
            return PhoneNormalizationResult(
                is_valid=False,
                original_phone=original,
                formatted_phone=None,
                cleaned_phone=cleaned,
                error_reason=f"Country {country_code} not supported yet",
            )

        national = self.reduce(original, affiliate_id, publisher_id)
        if national is None:
            return PhoneNormalizationResult(
                is_valid=False,
                original_phone=original,
                formatted_phone=None,
                cleaned_phone=cleaned,
                error_reason="Invalid phone number format",
            )

        national = check_quince(national)
        # Lookup best-effort: toute panne → fixe, la normalisation continue
        try:
            is_mobile = await self.mobile_lookup.is_mobile(national, PHONE_COUNTRY_CODE)
        except Exception as e:
            self.diagnostics.write(LOG_IS_MOBILE, f"ERROR: {e!r} - {national} - lookup failed")
            logger.warning(f"[PHONE] Mobile lookup failed for affiliate={affiliate_id}, assuming landline: {e!r}")
            is_mobile = False

        try:
            formatted = self.assemble(national, is_mobile)

            if not self.area_codes.is_valid_phone(formatted):
                self.diagnostics.write(LOG_AREA_CODE_FAIL, f"{affiliate_id},{publisher_id},{original},{formatted}")
                return PhoneNormalizationResult(
                    is_valid=False,
                    original_phone=original,
                    formatted_phone=None,
                    cleaned_phone=national,
                    is_mobile=is_mobile,
                    error_reason="Invalid area code",
                )
        except Exception as e:
            self.diagnostics.write(LOG_ERROR, f"{affiliate_id},{publisher_id},{original},{e}")
            logger.error(f"[PHONE] Unexpected formatting error for affiliate={affiliate_id}: {e}")
            return PhoneNormalizationResult(
                is_valid=False,
                original_phone=original,
                formatted_phone=None,
                cleaned_phone=national,
                is_mobile=is_mobile,
                error_reason=f"Error during formatting: {e}",
            )

        self.diagnostics.write(LOG_OK, f"{affiliate_id},{publisher_id},{original},{formatted},{is_mobile}")
        return PhoneNormalizationResult(
            is_valid=True,
            original_phone=original,
            formatted_phone=formatted,
            cleaned_phone=national,
            is_mobile=is_mobile,
        )
