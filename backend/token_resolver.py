# backend/token_resolver.py

"""
Token Resolver - operator reference -> canonical PO number

Accepts any reference an operator may have at hand (PO, GRN, gate pass,
LR, invoice, pallet label UID) and walks a short, ordered list of lookup
strategies until one yields a PO number.

RULES:
1) Blank reference -> EmptyTokenError before any read
2) PO-shaped reference -> returned unchanged, zero reads
3) Strategies run in a fixed order, first hit wins, none is retried
4) Label references stop after the label strategy (no guessing)
5) At most 3 store reads per resolution
6) A store failure aborts resolution with FlowTransportError
"""

from typing import Awaitable, Callable, FrozenSet, List, Optional, Tuple
import logging
import re

from inbound_flow_engine import (
    TokenKind,
    ResolutionToken,
    TokenResolution,
    EmptyTokenError,
    UnresolvableTokenError,
)
from inbound_flow_store import InboundFlowStore, first_bundle_po

logger = logging.getLogger(__name__)

# ==================== CLASSIFICATION ====================

PO_PATTERNS = (
    re.compile(r"/po/", re.IGNORECASE),
    re.compile(r"^po[-/]", re.IGNORECASE),
)

# Checked in order after the PO shape
PREFIX_PATTERNS: Tuple[Tuple[TokenKind, "re.Pattern[str]"], ...] = (
    (TokenKind.LABEL, re.compile(r"^lbl[-_]", re.IGNORECASE)),
    (TokenKind.GRN, re.compile(r"^grn[-_]", re.IGNORECASE)),
    (TokenKind.GATE_PASS, re.compile(r"^ge[-_]", re.IGNORECASE)),
    (TokenKind.LR, re.compile(r"^lr[-_]", re.IGNORECASE)),
    (TokenKind.INVOICE, re.compile(r"^inv[-_/]", re.IGNORECASE)),
)

MAX_HOPS = 3


def looks_like_po(value: str) -> bool:
    return any(p.search(value) for p in PO_PATTERNS)


def classify_token(raw: Optional[str]) -> ResolutionToken:
    """
    Classify a reference by shape. Pure, no reads.

    Raises:
        EmptyTokenError: If the reference is blank after trimming
    """
    value = str(raw or "").strip()
    if not value:
        raise EmptyTokenError(raw)

    if looks_like_po(value):
        return ResolutionToken(raw=raw, value=value, kind=TokenKind.PO)

    for kind, pattern in PREFIX_PATTERNS:
        if pattern.search(value):
            return ResolutionToken(raw=raw, value=value, kind=kind)

    return ResolutionToken(raw=raw, value=value, kind=TokenKind.UNKNOWN)


# ==================== RESOLVER ====================

class _Trace:
    """Counts store reads made while resolving one token"""

    def __init__(self, max_hops: int = MAX_HOPS):
        self.max_hops = max_hops
        self.hops = 0
        self.path: List[str] = []

    async def read(self, name: str, lookup: Callable[[str], Awaitable], value: str):
        if self.hops >= self.max_hops:
            raise RuntimeError(
                f"Resolution exceeded {self.max_hops} store reads at {name}"
            )
        self.hops += 1
        self.path.append(name)
        logger.debug(f"Resolution hop {self.hops}: {name}")
        return await lookup(value)


Strategy = Callable[[ResolutionToken, _Trace], Awaitable[Optional[str]]]

ALL_BUT_LABEL: FrozenSet[TokenKind] = frozenset(TokenKind) - {TokenKind.LABEL}


class TokenResolver:
    """
    Ordered-strategy resolver.

    Each strategy declares the token kinds it applies to. Strategies are
    tried in list order; the first one returning a PO number wins.
    """

    def __init__(self, store: InboundFlowStore):
        self.store = store
        self.strategies: List[Tuple[str, FrozenSet[TokenKind], Strategy]] = [
            ("po_shape", frozenset({TokenKind.PO}), self._po_shape),
            ("label_to_grn", frozenset({TokenKind.LABEL}), self._label_to_grn),
            ("grn_to_po", frozenset({TokenKind.GRN}), self._grn_to_po),
            ("gate_pass", frozenset({TokenKind.GATE_PASS}), self._gate_pass),
            ("lr", frozenset({TokenKind.LR}), self._lr),
            ("invoice", frozenset({TokenKind.INVOICE, TokenKind.UNKNOWN}), self._invoice),
            ("po_literal", ALL_BUT_LABEL, self._po_literal),
        ]

    async def resolve(self, raw: Optional[str]) -> str:
        """
        Resolve a reference to its canonical PO number.

        Raises:
            EmptyTokenError: Blank reference
            UnresolvableTokenError: No strategy found a PO
            FlowTransportError: Store read failed
        """
        resolution = await self.resolve_with_trace(raw)
        return resolution.po_key

    async def resolve_with_trace(self, raw: Optional[str]) -> TokenResolution:
        token = classify_token(raw)
        trace = _Trace()

        for name, kinds, strategy in self.strategies:
            if token.kind not in kinds:
                continue
            po_key = await strategy(token, trace)
            if po_key:
                logger.info(
                    f"Resolved {token.kind.value} '{token.value}' -> PO {po_key} "
                    f"via {name} in {trace.hops} hop(s)"
                )
                return TokenResolution(token=token, po_key=po_key, hops=trace.hops, path=trace.path)

        logger.info(f"Unresolvable {token.kind.value} reference '{token.value}' after {trace.hops} hop(s)")
        raise UnresolvableTokenError(token.value)

    # ---------- strategies ----------

    async def _po_shape(self, token: ResolutionToken, trace: _Trace) -> Optional[str]:
        return token.value

    async def _label_to_grn(self, token: ResolutionToken, trace: _Trace) -> Optional[str]:
        grn_no = await trace.read("lookup_grn_by_label", self.store.lookup_grn_by_label, token.value)
        if not grn_no:
            return None
        return await trace.read("lookup_po_by_grn", self.store.lookup_po_by_grn, grn_no)

    async def _grn_to_po(self, token: ResolutionToken, trace: _Trace) -> Optional[str]:
        return await trace.read("lookup_po_by_grn", self.store.lookup_po_by_grn, token.value)

    async def _gate_pass(self, token: ResolutionToken, trace: _Trace) -> Optional[str]:
        po_key = await trace.read("lookup_po_by_gate_pass", self.store.lookup_po_by_gate_pass, token.value)
        if po_key:
            return po_key
        bundle = await trace.read("get_gate_pass_bundle", self.store.get_gate_pass_bundle, token.value)
        return first_bundle_po(bundle)

    async def _lr(self, token: ResolutionToken, trace: _Trace) -> Optional[str]:
        po_key = await trace.read("lookup_po_by_lr", self.store.lookup_po_by_lr, token.value)
        if po_key:
            return po_key
        bundle = await trace.read("get_lr_gate_bundle", self.store.get_lr_gate_bundle, token.value)
        return first_bundle_po(bundle)

    async def _invoice(self, token: ResolutionToken, trace: _Trace) -> Optional[str]:
        return await trace.read("lookup_po_by_invoice", self.store.lookup_po_by_invoice, token.value)

    async def _po_literal(self, token: ResolutionToken, trace: _Trace) -> Optional[str]:
        exists = await trace.read("verify_po_exists", self.store.verify_po_exists, token.value)
        return token.value if exists else None
