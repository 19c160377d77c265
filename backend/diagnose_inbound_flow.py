#!/usr/bin/env python3
"""
Diagnostic script to show how a reference resolves and what its inbound flow looks like

Usage: python diagnose_inbound_flow.py [REFERENCE]
Example: python diagnose_inbound_flow.py LBL-GRN-20250903-7538-001-002
"""

import argparse
import asyncio
import os
from pathlib import Path

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient

from inbound_flow_engine import InboundFlowResult, pending_rows, status_tone
from inbound_flow_service import InboundFlowService

ROOT_DIR = Path(__file__).parent

TONE_MARKS = {
    "done": "✓",
    "open": "○",
    "in_process": "…",
    "rejected": "❌",
    "neutral": "-",
}


def format_flow_report(result: InboundFlowResult) -> str:
    """Plain-text report of one flow result"""
    lines = ["=" * 80, f"INBOUND FLOW FOR {result.token}", "=" * 80, ""]

    if result.token_kind:
        lines.append(f"Reference kind: {result.token_kind.value}")
    lines.append(f"Store reads:    {result.hops}")

    if not result.ok:
        for error in result.errors:
            lines.append(f"❌ {error['error_code']}: {error['message']}")
            if error.get("retryable"):
                lines.append("   The store could not be reached. Try again.")
        return "\n".join(lines)

    lines.append(f"PO:             {result.po_key}")
    lines.append("")

    for idx, stage in enumerate(result.stages, 1):
        mark = TONE_MARKS[status_tone(stage.effective_status)]
        line = f"{idx}. {mark} {stage.label:<20} {stage.effective_status:<12} (raw: {stage.raw_status}, rows: {len(stage.rows)})"
        open_rows = len(pending_rows(stage))
        if open_rows:
            line += f" [{open_rows} pending]"
        lines.append(line)
        if stage.done_by or stage.closed_at:
            lines.append(f"     by {stage.done_by or 'N/A'} @ {stage.closed_at or 'N/A'}")

    kpis = result.kpis
    lines.extend([
        "",
        f"Progress:       {kpis.progress_percent}%",
        f"GRNs posted:    {kpis.grns_posted}",
        f"Labels printed: {kpis.labels_printed}",
        f"Pallets:        {kpis.pallet_count}",
        f"QC pending:     {kpis.qc_pending_count}",
        f"Live containers:{kpis.containers_live:g}",
    ])
    return "\n".join(lines)


async def diagnose(reference: str):
    load_dotenv(ROOT_DIR / '.env')
    client = AsyncIOMotorClient(os.environ.get('MONGO_URL', 'mongodb://localhost:27017'))
    db = client[os.environ.get('DB_NAME', 'warehouse_db')]
    try:
        result = await InboundFlowService(db).resolve_and_derive_flow(reference)
        print(format_flow_report(result))
    finally:
        client.close()


def main():
    parser = argparse.ArgumentParser(description="Resolve a reference and print its inbound flow")
    parser.add_argument("reference", help="PO, GRN, gate pass, LR, invoice or label UID")
    args = parser.parse_args()
    asyncio.run(diagnose(args.reference))


if __name__ == "__main__":
    main()
