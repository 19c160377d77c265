# backend/inbound_flow_engine.py

"""
Inbound Flow Engine - Stage Status Derivation

This engine is responsible for:
- The fixed 7-stage inbound pipeline schema
- Normalizing a raw inbound-flow document into a FlowSnapshot
- Deriving the effective status of every stage
- Aggregating KPIs over the derived stage set
- Compact "flow facts" for reports and chat

This engine MUST NOT:
- Write anything back to the pipeline
- Cache snapshots
- Guess status semantics beyond the synonym whitelist

GLOBAL INVARIANTS (ENFORCED):
1) A FlowSnapshot always holds exactly the 7 stages, in pipeline order
2) Missing stages are synthesized as "Open" with no rows
3) Derivation and aggregation are pure: same snapshot in, same output out
4) Any row in GRN / label / palletization counts as completion of that stage
5) 0 <= progress_percent <= 100
"""

from enum import Enum
from typing import Optional, List, Dict, Any, Mapping, Iterable, Union
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from pydantic import BaseModel, Field, ConfigDict, model_validator
import logging
import math
import re

logger = logging.getLogger(__name__)

ENGINE_VERSION = "1.0.0"

# ==================== ENUMS ====================

class StageKey(str, Enum):
    """Inbound pipeline stages, in pipeline order"""
    GATE_ENTRY = "gate_entry"
    VEHICLE_INSPECTION = "vehicle_inspection"
    MATERIAL_INSPECTION = "material_inspection"
    WEIGHT_CAPTURE = "weight_capture"
    GRN_POSTING = "grn_posting"
    LABEL_PRINTING = "label_printing"
    PALLETIZATION = "palletization"


class TokenKind(str, Enum):
    """Shape of an operator-supplied reference"""
    PO = "PO"
    GRN = "GRN"
    GATE_PASS = "GATE_PASS"
    LR = "LR"
    LABEL = "LABEL"
    INVOICE = "INVOICE"
    UNKNOWN = "UNKNOWN"


class FlowResultStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


# ==================== STAGE SCHEMA ====================

STAGES = (
    StageKey.GATE_ENTRY,
    StageKey.VEHICLE_INSPECTION,
    StageKey.MATERIAL_INSPECTION,
    StageKey.WEIGHT_CAPTURE,
    StageKey.GRN_POSTING,
    StageKey.LABEL_PRINTING,
    StageKey.PALLETIZATION,
)

STAGE_LABELS: Dict[StageKey, str] = {
    StageKey.GATE_ENTRY: "Gate Entry",
    StageKey.VEHICLE_INSPECTION: "Vehicle Inspection",
    StageKey.MATERIAL_INSPECTION: "Material Inspection",
    StageKey.WEIGHT_CAPTURE: "Weight Capture",
    StageKey.GRN_POSTING: "GRN Posting",
    StageKey.LABEL_PRINTING: "Label Printing",
    StageKey.PALLETIZATION: "Palletization",
}

# camelCase names used by the flow facts view
STAGE_FACT_NAMES: Dict[StageKey, str] = {
    StageKey.GATE_ENTRY: "gateEntry",
    StageKey.VEHICLE_INSPECTION: "vehicleInspection",
    StageKey.MATERIAL_INSPECTION: "materialInspection",
    StageKey.WEIGHT_CAPTURE: "weightCapture",
    StageKey.GRN_POSTING: "grnPosting",
    StageKey.LABEL_PRINTING: "labelPrinting",
    StageKey.PALLETIZATION: "palletization",
}

DEFAULT_STATUS = "Open"

# ==================== STATUS VOCABULARY ====================

# Closed-like and completed-like share one whitelist. Do not extend it here
# without updating every consumer of the derived statuses.
CLOSED_SYNONYMS = ("closed", "done", "posted", "accepted", "approved", "completed")

_CLOSED_LIKE_RE = re.compile("|".join(CLOSED_SYNONYMS), re.IGNORECASE)
_WEIGHT_HEADER_DONE_RE = re.compile(r"completed|closed|done", re.IGNORECASE)
_QC_CLEARED_RE = re.compile(r"accepted|approved|cleared|released", re.IGNORECASE)

_IN_PROCESS_EXACT = {"draft", "created", "in-process", "in process"}
_REJECTED_EXACT = {"cancelled", "canceled", "rejected"}


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def is_closed_like(status: Any) -> bool:
    """Case-insensitive substring match against the closed synonym whitelist."""
    return bool(_CLOSED_LIKE_RE.search(_as_text(status)))


def is_completed_like(status: Any) -> bool:
    """Completed-like uses the same whitelist as closed-like."""
    return is_closed_like(status)


def is_qc_cleared(qc_status: Any) -> bool:
    return bool(_QC_CLEARED_RE.search(_as_text(qc_status)))


def status_tone(status: Any) -> str:
    """
    Classify a status for colouring.

    Returns one of: done, open, in_process, rejected, neutral.
    Matching is exact on the lower-cased value except for the
    "transit"/"review" substrings.
    """
    value = _as_text(status).lower()
    if value in CLOSED_SYNONYMS:
        return "done"
    if value == "open":
        return "open"
    if "transit" in value or "review" in value or value in _IN_PROCESS_EXACT:
        return "in_process"
    if value in _REJECTED_EXACT:
        return "rejected"
    return "neutral"


# ==================== ERROR CLASSES ====================

class FlowError(Exception):
    """Base inbound flow error"""
    def __init__(self, error_code: str, message: str, token: Optional[str] = None, retryable: bool = False):
        self.error_code = error_code
        self.message = message
        self.token = token
        self.retryable = retryable
        # TokenResolution, set when the failure came after the reference resolved
        self.resolution = None
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "token": self.token,
            "retryable": self.retryable,
        }


class EmptyTokenError(FlowError):
    """Blank reference supplied"""
    def __init__(self, token: Optional[str] = None):
        super().__init__(
            "EMPTY_TOKEN",
            "Reference is empty. Enter a PO, GRN, gate pass, LR, invoice or label number.",
            token=token,
        )


class UnresolvableTokenError(FlowError):
    """No PO could be found for the reference"""
    def __init__(self, token: str):
        super().__init__(
            "UNRESOLVABLE",
            f"Nothing found for reference '{token}'.",
            token=token,
        )


class FlowNotFoundError(FlowError):
    """PO resolved but no inbound flow document exists for it"""
    def __init__(self, po_key: str, token: Optional[str] = None):
        self.po_key = po_key
        super().__init__(
            "FLOW_NOT_FOUND",
            f"No inbound flow recorded for PO '{po_key}'.",
            token=token,
        )


class FlowTransportError(FlowError):
    """The backing store could not be read"""
    def __init__(self, operation: str, detail: str, token: Optional[str] = None):
        self.operation = operation
        self.detail = detail
        super().__init__(
            "TRANSPORT_ERROR",
            f"Store read '{operation}' failed: {detail}",
            token=token,
            retryable=True,
        )


# ==================== DATA MODELS ====================

class StageSnapshot(BaseModel):
    """Point-in-time view of one stage as recorded by its source module"""
    model_config = ConfigDict(frozen=True)

    stage: StageKey
    raw_status: str = DEFAULT_STATUS
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    closed_at: Optional[str] = None
    done_by: Optional[str] = None

    @property
    def has_rows(self) -> bool:
        return len(self.rows) > 0


class FlowSnapshot(BaseModel):
    """All 7 stages of one PO, plus the pass-through summary"""
    model_config = ConfigDict(frozen=True)

    po_key: str
    stages: Dict[StageKey, StageSnapshot]
    summary: Dict[str, Any] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _check_stage_set(self) -> "FlowSnapshot":
        if tuple(self.stages.keys()) != STAGES:
            raise ValueError(
                f"FlowSnapshot must hold exactly {[s.value for s in STAGES]} in order, "
                f"got {[getattr(k, 'value', k) for k in self.stages.keys()]}"
            )
        for key, snap in self.stages.items():
            if snap.stage != key:
                raise ValueError(f"Stage snapshot for {key.value} is tagged {snap.stage.value}")
        return self

    def stage(self, key: StageKey) -> StageSnapshot:
        return self.stages[key]


class EffectiveStage(StageSnapshot):
    """StageSnapshot plus its derived status"""
    label: str
    effective_status: str


class ResolutionToken(BaseModel):
    """Classified operator reference"""
    model_config = ConfigDict(frozen=True)

    raw: str
    value: str
    kind: TokenKind


class TokenResolution(BaseModel):
    """Resolved PO key with the trace of reads that produced it"""
    token: ResolutionToken
    po_key: str
    hops: int = 0
    path: List[str] = Field(default_factory=list)


class KPISummary(BaseModel):
    progress_percent: int = Field(ge=0, le=100)
    grns_posted: int = 0
    labels_printed: int = 0
    pallet_count: int = 0
    qc_pending_count: int = 0
    containers_live: float = 0


class InboundFlowResult(BaseModel):
    """Output contract of resolve_and_derive_flow"""
    status: FlowResultStatus
    token: str
    token_kind: Optional[TokenKind] = None
    po_key: Optional[str] = None
    hops: int = 0
    stages: List[EffectiveStage] = []
    kpis: Optional[KPISummary] = None
    summary: Dict[str, Any] = {}
    errors: List[Dict[str, Any]] = []
    calculated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    engine_version: str = ENGINE_VERSION

    @property
    def ok(self) -> bool:
        return self.status == FlowResultStatus.SUCCESS

    @property
    def error_code(self) -> Optional[str]:
        return self.errors[0]["error_code"] if self.errors else None


class FlowFacts(BaseModel):
    """Compact per-PO facts for reports and chat answers"""
    po_key: str
    statuses: Dict[str, str]
    invoices: List[Any] = []
    grns: List[Any] = []
    gate_passes: List[Any] = []
    grn_rows: List[Dict[str, Any]] = []
    label_rows: List[Dict[str, Any]] = []
    pallet_rows: List[Dict[str, Any]] = []


# ==================== SNAPSHOT NORMALIZATION ====================

def _normalize_timestamp(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _normalize_stage(key: StageKey, raw: Any) -> StageSnapshot:
    if not isinstance(raw, dict):
        return StageSnapshot(stage=key)

    rows = raw.get("rows")
    if not isinstance(rows, list):
        rows = []
    rows = [r for r in rows if isinstance(r, dict)]

    status = _as_text(raw.get("status")).strip() or DEFAULT_STATUS
    done_by = raw.get("done_by")

    return StageSnapshot(
        stage=key,
        raw_status=status,
        rows=rows,
        closed_at=_normalize_timestamp(raw.get("closed_at")),
        done_by=str(done_by) if done_by else None,
    )


def normalize_flow_document(po_key: str, document: Optional[Dict[str, Any]]) -> FlowSnapshot:
    """
    Shape a raw inbound-flow document into a FlowSnapshot.

    INVARIANT: the result always has exactly the 7 stages in pipeline order.
    Stages missing from the document are synthesized as "Open" with no rows;
    unknown stage keys are dropped.

    Args:
        po_key: Canonical PO number the document was fetched for
        document: {"stages": {<stage>: {status, closed_at, done_by, rows}}, "summary": {...}}

    Returns:
        FlowSnapshot
    """
    document = document or {}
    raw_stages = document.get("stages")
    if not isinstance(raw_stages, dict):
        raw_stages = {}

    unknown = set(raw_stages) - {s.value for s in STAGES}
    if unknown:
        logger.debug(f"Dropping unknown stages {sorted(unknown)} for PO {po_key}")

    stages = {key: _normalize_stage(key, raw_stages.get(key.value)) for key in STAGES}

    summary = document.get("summary")
    return FlowSnapshot(
        po_key=po_key,
        stages=stages,
        summary=summary if isinstance(summary, dict) else {},
    )


# ==================== EFFECTIVE STATUS DERIVATION ====================

def _derive_weight_capture(snap: StageSnapshot) -> str:
    if not snap.rows:
        return snap.raw_status
    headers = [_as_text(r.get("header_status")) for r in snap.rows]
    matched = [bool(_WEIGHT_HEADER_DONE_RE.search(h)) for h in headers]
    if all(matched):
        return "Completed"
    if any(matched):
        return "In-Process"
    return snap.raw_status


def derive_effective_statuses(snapshot: FlowSnapshot) -> Dict[StageKey, str]:
    """
    Effective status of every stage.

    Rules (first match wins per stage):
    - gate_entry: GRN rows or pallet rows -> "Closed"
    - weight_capture: GRN, label or pallet rows -> "Completed";
      otherwise all/some header statuses done -> "Completed"/"In-Process"
    - grn_posting: rows and raw not closed-like -> "Posted"
    - label_printing, palletization: rows and raw not completed-like -> "Completed"
    - vehicle_inspection, material_inspection: raw status

    Pure and deterministic; every other case passes the raw status through.
    """
    grn = snapshot.stage(StageKey.GRN_POSTING)
    labels = snapshot.stage(StageKey.LABEL_PRINTING)
    pallets = snapshot.stage(StageKey.PALLETIZATION)

    grn_done = grn.has_rows
    palletization_done = pallets.has_rows

    statuses: Dict[StageKey, str] = {}
    for key in STAGES:
        snap = snapshot.stage(key)
        raw = snap.raw_status

        if key == StageKey.GATE_ENTRY:
            status = "Closed" if (grn_done or palletization_done) else raw
        elif key == StageKey.WEIGHT_CAPTURE:
            if grn_done or palletization_done or labels.has_rows:
                status = "Completed"
            else:
                status = _derive_weight_capture(snap)
        elif key == StageKey.GRN_POSTING:
            status = "Posted" if (snap.has_rows and not is_closed_like(raw)) else raw
        elif key in (StageKey.LABEL_PRINTING, StageKey.PALLETIZATION):
            status = "Completed" if (snap.has_rows and not is_completed_like(raw)) else raw
        else:
            status = raw

        statuses[key] = status
    return statuses


def build_effective_stages(snapshot: FlowSnapshot) -> List[EffectiveStage]:
    """The 7 stages in pipeline order, each with its label and effective status."""
    statuses = derive_effective_statuses(snapshot)
    return [
        EffectiveStage(
            **snapshot.stage(key).model_dump(),
            label=STAGE_LABELS[key],
            effective_status=statuses[key],
        )
        for key in STAGES
    ]


def pending_rows(stage: StageSnapshot) -> List[Dict[str, Any]]:
    """Rows of a stage whose own status is not closed-like."""
    out = []
    for row in stage.rows:
        status = (
            row.get("status")
            or row.get("overall_status")
            or row.get("header_status")
            or row.get("gate_status")
            or ""
        )
        if not is_closed_like(status):
            out.append(row)
    return out


# ==================== KPI AGGREGATION ====================

StageSet = Union[Mapping[StageKey, EffectiveStage], Iterable[EffectiveStage]]


def _as_stage_map(stages: StageSet) -> Dict[StageKey, EffectiveStage]:
    if isinstance(stages, Mapping):
        return dict(stages)
    return {s.stage: s for s in stages}


def _round_percent(numerator: int, denominator: int) -> int:
    if denominator <= 0:
        return 0
    value = Decimal(100) * Decimal(numerator) / Decimal(denominator)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _to_number(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    # "nan" / "inf" parse as floats but are not counts
    return number if math.isfinite(number) else 0


def aggregate_kpis(stages: StageSet) -> KPISummary:
    """
    KPI rollup over a derived stage set.

    progress_percent uses ROUND_HALF_UP and is 0 for an empty stage set.
    Row-based KPIs read 0 for stages absent from the set.
    """
    stage_map = _as_stage_map(stages)

    def rows_of(key: StageKey) -> List[Dict[str, Any]]:
        stage = stage_map.get(key)
        return stage.rows if stage else []

    closed = sum(1 for s in stage_map.values() if is_closed_like(s.effective_status))

    pallet_rows = rows_of(StageKey.PALLETIZATION)
    pallet_ids = {_as_text(r.get("uid")) for r in pallet_rows}
    qc_pending = sum(1 for r in pallet_rows if not is_qc_cleared(r.get("qc_status")))
    containers_live = sum(_to_number(r.get("live_containers")) for r in pallet_rows)

    return KPISummary(
        progress_percent=_round_percent(closed, len(stage_map)),
        grns_posted=len(rows_of(StageKey.GRN_POSTING)),
        labels_printed=len(rows_of(StageKey.LABEL_PRINTING)),
        pallet_count=len(pallet_ids),
        qc_pending_count=qc_pending,
        containers_live=containers_live,
    )


# ==================== FLOW FACTS ====================

def build_flow_facts(result: InboundFlowResult) -> FlowFacts:
    """Compact facts view of a successful flow result."""
    if not result.ok or not result.po_key:
        raise ValueError("Flow facts require a successful flow result")

    by_key = {s.stage: s for s in result.stages}
    summary = result.summary or {}
    return FlowFacts(
        po_key=result.po_key,
        statuses={STAGE_FACT_NAMES[k]: by_key[k].effective_status for k in STAGES},
        invoices=list(summary.get("invoices") or []),
        grns=list(summary.get("grns") or []),
        gate_passes=list(summary.get("gate_passes") or []),
        grn_rows=list(by_key[StageKey.GRN_POSTING].rows),
        label_rows=list(by_key[StageKey.LABEL_PRINTING].rows),
        pallet_rows=list(by_key[StageKey.PALLETIZATION].rows),
    )
