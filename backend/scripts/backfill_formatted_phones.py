"""
Lead Backoffice — Backfill: normalise les téléphones stockés bruts.

Reprend les leads sans customer_phone_formatted (normalisation échouée à
l'ingestion, lookup indisponible, table d'indicatifs incomplète) et
réapplique le PhoneNormalizer. Les numéros toujours invalides restent bruts.

Run: cd backend && python3 scripts/backfill_formatted_phones.py [--limit N] [--dry-run]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import client, db, now_iso
from services.diagnostic_log import DiagnosticLog
from services.lead_store import LeadStore
from services.phone_normalizer import PhoneNormalizer, MobileLookup

logger = logging.getLogger("backfill_phones")


async def backfill(store, normalizer: PhoneNormalizer, limit: int = 0, dry_run: bool = False) -> dict:
    leads = await store.find_unformatted_leads(limit)
    report = {"total": len(leads), "formatted": 0, "still_invalid": 0, "conflicts": 0}
    invalid_sample = []

    for lead in leads:
        result = await normalizer.normalize(
            lead["customer_phone"],
            affiliate_id=str(lead.get("user_id")),
            publisher_id=lead.get("publisher_id") or "NODEF",
        )
        if not result.is_valid:
            report["still_invalid"] += 1
            invalid_sample.append((lead["lead_number"], lead["customer_phone"], result.error_reason))
            continue

        if dry_run:
            report["formatted"] += 1
            continue

        if await store.set_formatted_phone(lead["lead_number"], result.formatted_phone, result.is_mobile, now_iso()):
            report["formatted"] += 1
        else:
            # Un autre lead actif du même jour porte déjà ce numéro
            report["conflicts"] += 1
            logger.warning(f"[BACKFILL] {lead['lead_number']} not updated: {result.formatted_phone} already active that day")

    for lead_number, phone, reason in invalid_sample[:20]:
        logger.info(f"[BACKFILL] still invalid lead={lead_number} phone={phone} reason={reason}")

    return report


async def main(limit: int, dry_run: bool):
    diagnostics = DiagnosticLog()
    normalizer = PhoneNormalizer(mobile_lookup=MobileLookup(diagnostics=diagnostics), diagnostics=diagnostics)
    try:
        report = await backfill(LeadStore(client, db), normalizer, limit=limit, dry_run=dry_run)
    finally:
        diagnostics.close()
        client.close()

    print("\n════════════════════════════════════")
    print("  PHONE BACKFILL REPORT" + (" (dry run)" if dry_run else ""))
    print("════════════════════════════════════")
    print(f"  Leads scanned:    {report['total']}")
    print(f"  Formatted:        {report['formatted']}")
    print(f"  Still invalid:    {report['still_invalid']}")
    print(f"  Day conflicts:    {report['conflicts']}")
    print("════════════════════════════════════")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    parser = argparse.ArgumentParser(description="Re-normalize raw phone numbers stored on leads")
    parser.add_argument("--limit", type=int, default=0)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    asyncio.run(main(args.limit, args.dry_run))
