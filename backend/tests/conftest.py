import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


class MockCollection:
    """Mock MongoDB collection supporting the find_one calls the store makes"""
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.calls = []
        self.error = None

    def insert(self, *docs):
        self.docs.extend(docs)

    async def find_one(self, query, projection=None, sort=None):
        self.calls.append(query)
        if self.error:
            raise self.error

        matches = [d for d in self.docs if all(d.get(k) == v for k, v in query.items())]
        for field, direction in reversed(sort or []):
            matches.sort(key=lambda d: str(d.get(field) or ""), reverse=direction < 0)
        if not matches:
            return None

        doc = dict(matches[0])
        projection = projection or {}
        included = [k for k, v in projection.items() if v and k != "_id"]
        if included:
            doc = {k: doc[k] for k in included if k in doc}
        doc.pop("_id", None)
        return doc


class MockDB:
    """Mock MongoDB database; collections are created on first access"""
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = MockCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    @property
    def total_reads(self):
        return sum(len(c.calls) for c in self._collections.values())


@pytest.fixture
def mock_db():
    """Empty mock MongoDB database"""
    return MockDB()


def make_flow_document(po_no, **stages):
    """Inbound flow document with the given stages; others omitted"""
    return {
        "po_no": po_no,
        "stages": {
            key: {
                "status": value.get("status", "Open"),
                "closed_at": value.get("closed_at"),
                "done_by": value.get("done_by"),
                "rows": value.get("rows", []),
            }
            for key, value in stages.items()
        },
        "summary": {"invoices": ["INV-1001"], "grns": ["GRN-7738"], "gate_passes": ["GE-0042"]},
    }


@pytest.fixture
def flow_document():
    return make_flow_document


@pytest.fixture
def seeded_db(mock_db):
    """PO MFI/25/PO/00079 with gate entry through palletization recorded"""
    po = "MFI/25/PO/00079"
    mock_db.label_prints.insert(
        {"uid": "LBL-GRN-20250903-7538-001-002", "grn_no": "GRN-7738", "printed_at": "2025-09-03T10:00:00"},
    )
    mock_db.grn_postings.insert(
        {"grn_no": "GRN-7738", "po_no": po, "lr_no": "LR-5501", "invoice_no": "INV-1001",
         "created_at": "2025-09-03T09:00:00"},
    )
    mock_db.po_gate_links.insert(
        {"gate_pass_no": "GE-0042", "po_no": po, "created_at": "2025-09-02T08:00:00"},
    )
    mock_db.inbound_gate_entries.insert(
        {"gate_pass_no": "GE-0042", "lr_no": "LR-5501", "po_bundle_json": [{"po_no": po}],
         "updated_at": "2025-09-02T08:30:00"},
    )
    mock_db.inbound_flows.insert(make_flow_document(
        po,
        gate_entry={"status": "In Transit", "rows": [{"gate_pass_no": "GE-0042", "gate_status": "IN"}]},
        vehicle_inspection={"status": "Approved", "done_by": "qa@warehouse", "closed_at": "2025-09-02T09:00:00"},
        material_inspection={"status": "Accepted"},
        weight_capture={"status": "Open", "rows": [{"wc_no": "WC-1", "header_status": "Open"}]},
        grn_posting={"status": "Open", "rows": [{"grn_no": "GRN-7738"}]},
        label_printing={"status": "Open", "rows": [{"uid": "LBL-GRN-20250903-7538-001-002"}]},
        palletization={"status": "Open", "rows": [
            {"uid": "PAL-1", "qc_status": "Approved", "live_containers": 2},
            {"uid": "PAL-1", "qc_status": "Quarantine", "live_containers": 1},
        ]},
    ))
    return mock_db
