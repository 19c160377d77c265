"""
Inbound Flow Store - read-only MongoDB access for the inbound flow engine
"""

from typing import Any, Dict, List, Optional
from pymongo.errors import PyMongoError
import logging

from inbound_flow_engine import FlowTransportError

logger = logging.getLogger(__name__)

# Collections written by the gate entry / GRN / label / palletization modules
INBOUND_FLOWS = "inbound_flows"
LABEL_PRINTS = "label_prints"
GRN_POSTINGS = "grn_postings"
PO_GATE_LINKS = "po_gate_links"
INBOUND_GATE_ENTRIES = "inbound_gate_entries"

NEWEST_PRINTED = [("printed_at", -1)]
NEWEST_CREATED = [("created_at", -1)]
NEWEST_UPDATED = [("updated_at", -1)]


def _clean(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def first_bundle_po(bundle: Any) -> Optional[str]:
    """First non-empty po_no in a gate entry's PO bundle."""
    if not isinstance(bundle, list):
        return None
    for entry in bundle:
        if isinstance(entry, dict):
            po_no = _clean(entry.get("po_no"))
            if po_no:
                return po_no
    return None


class InboundFlowStore:
    """Point lookups and the aggregate flow read. No writes."""

    def __init__(self, db):
        """
        Args:
            db: MongoDB database instance (motor)
        """
        self.db = db

    async def _find_one(
        self,
        operation: str,
        collection: str,
        query: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None,
        sort: Optional[List] = None,
    ) -> Optional[dict]:
        projection = {"_id": 0, **(projection or {})}
        kwargs = {"sort": sort} if sort else {}
        try:
            return await self.db[collection].find_one(query, projection, **kwargs)
        except PyMongoError as e:
            logger.warning(f"{operation} failed on {collection}: {e}")
            raise FlowTransportError(operation, str(e))

    async def get_inbound_flow(self, po_key: str) -> Optional[dict]:
        """Inbound flow document for a PO: {po_no, stages: {...}, summary: {...}}"""
        return await self._find_one("get_inbound_flow", INBOUND_FLOWS, {"po_no": po_key})

    async def lookup_grn_by_label(self, label_uid: str) -> Optional[str]:
        doc = await self._find_one(
            "lookup_grn_by_label", LABEL_PRINTS, {"uid": label_uid}, {"grn_no": 1}, NEWEST_PRINTED
        )
        return _clean(doc.get("grn_no")) if doc else None

    async def lookup_po_by_grn(self, grn_no: str) -> Optional[str]:
        doc = await self._find_one("lookup_po_by_grn", GRN_POSTINGS, {"grn_no": grn_no}, {"po_no": 1})
        return _clean(doc.get("po_no")) if doc else None

    async def lookup_po_by_gate_pass(self, gate_pass_no: str) -> Optional[str]:
        doc = await self._find_one(
            "lookup_po_by_gate_pass", PO_GATE_LINKS, {"gate_pass_no": gate_pass_no}, {"po_no": 1}, NEWEST_CREATED
        )
        return _clean(doc.get("po_no")) if doc else None

    async def get_gate_pass_bundle(self, gate_pass_no: str) -> List[dict]:
        doc = await self._find_one(
            "get_gate_pass_bundle", INBOUND_GATE_ENTRIES, {"gate_pass_no": gate_pass_no}, {"po_bundle_json": 1}
        )
        bundle = (doc or {}).get("po_bundle_json")
        return bundle if isinstance(bundle, list) else []

    async def lookup_po_by_lr(self, lr_no: str) -> Optional[str]:
        doc = await self._find_one(
            "lookup_po_by_lr", GRN_POSTINGS, {"lr_no": lr_no}, {"po_no": 1}, NEWEST_CREATED
        )
        return _clean(doc.get("po_no")) if doc else None

    async def get_lr_gate_bundle(self, lr_no: str) -> List[dict]:
        doc = await self._find_one(
            "get_lr_gate_bundle", INBOUND_GATE_ENTRIES, {"lr_no": lr_no}, {"po_bundle_json": 1}, NEWEST_UPDATED
        )
        bundle = (doc or {}).get("po_bundle_json")
        return bundle if isinstance(bundle, list) else []

    async def lookup_po_by_invoice(self, invoice_no: str) -> Optional[str]:
        doc = await self._find_one(
            "lookup_po_by_invoice", GRN_POSTINGS, {"invoice_no": invoice_no}, {"po_no": 1}, NEWEST_CREATED
        )
        return _clean(doc.get("po_no")) if doc else None

    async def verify_po_exists(self, po_key: str) -> bool:
        doc = await self._find_one("verify_po_exists", GRN_POSTINGS, {"po_no": po_key}, {"po_no": 1})
        return doc is not None
