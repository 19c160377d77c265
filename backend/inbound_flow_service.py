"""
Inbound Flow Service - resolve a reference and derive the PO's inbound flow
"""

from typing import Optional
import logging

from inbound_flow_engine import (
    EmptyTokenError,
    FlowError,
    FlowNotFoundError,
    FlowResultStatus,
    FlowSnapshot,
    FlowFacts,
    InboundFlowResult,
    TokenKind,
    aggregate_kpis,
    build_effective_stages,
    build_flow_facts,
    normalize_flow_document,
    ENGINE_VERSION,
)
from inbound_flow_store import InboundFlowStore
from token_resolver import TokenResolver, classify_token

logger = logging.getLogger(__name__)


class InboundFlowService:
    """Resolver + fetcher + deriver, wired over one MongoDB database"""

    def __init__(self, db):
        self.db = db
        self.store = InboundFlowStore(db)
        self.resolver = TokenResolver(self.store)
        self.version = ENGINE_VERSION

    async def fetch_snapshot(self, po_key: str) -> FlowSnapshot:
        """
        One read of the inbound flow document, normalized to the 7 stages.

        Raises:
            FlowNotFoundError: No flow document for the PO
            FlowTransportError: Store read failed
        """
        document = await self.store.get_inbound_flow(po_key)
        if document is None:
            logger.info(f"No inbound flow document for PO {po_key}")
            raise FlowNotFoundError(po_key)
        return normalize_flow_document(po_key, document)

    async def _derive(self, raw_token: Optional[str]) -> InboundFlowResult:
        """
        Resolve, fetch, derive and aggregate.

        Raises:
            FlowError: Any domain failure, with .resolution set once the PO is known
        """
        resolution = await self.resolver.resolve_with_trace(raw_token)
        try:
            snapshot = await self.fetch_snapshot(resolution.po_key)
        except FlowError as e:
            e.resolution = resolution
            raise

        stages = build_effective_stages(snapshot)
        kpis = aggregate_kpis(stages)

        return InboundFlowResult(
            status=FlowResultStatus.SUCCESS,
            token=str(raw_token or ""),
            token_kind=resolution.token.kind,
            po_key=resolution.po_key,
            hops=resolution.hops,
            stages=stages,
            kpis=kpis,
            summary=snapshot.summary,
            engine_version=self.version,
        )

    async def resolve_and_derive_flow(self, raw_token: Optional[str]) -> InboundFlowResult:
        """
        Main entry point.

        1) Resolve the reference to a PO number
        2) Fetch and normalize the PO's flow snapshot
        3) Derive effective stage statuses
        4) Aggregate KPIs

        Domain failures (empty, unresolvable, not found, store down) come back
        as an ERROR result carrying a typed error payload.
        """
        try:
            return await self._derive(raw_token)

        except FlowError as e:
            token_text = str(raw_token or "")
            if e.token is None:
                e.token = token_text
            log = logger.warning if e.retryable else logger.info
            log(f"Inbound flow for '{token_text}' failed: {e.error_code} - {e.message}")

            resolution = e.resolution
            if resolution is not None:
                token_kind, po_key, hops = resolution.token.kind, resolution.po_key, resolution.hops
            else:
                token_kind, po_key, hops = self._kind_of(raw_token), None, 0

            return InboundFlowResult(
                status=FlowResultStatus.ERROR,
                token=token_text,
                token_kind=token_kind,
                po_key=po_key,
                hops=hops,
                errors=[e.to_payload()],
                engine_version=self.version,
            )

    @staticmethod
    def _kind_of(raw_token: Optional[str]) -> Optional[TokenKind]:
        try:
            return classify_token(raw_token).kind
        except EmptyTokenError:
            return None

    async def get_flow_facts(self, raw_token: Optional[str]) -> FlowFacts:
        """
        Compact facts for a reference.

        Raises:
            FlowError: The same typed failures resolve_and_derive_flow reports
        """
        try:
            result = await self._derive(raw_token)
        except FlowError as e:
            if e.token is None:
                e.token = str(raw_token or "")
            raise
        return build_flow_facts(result)
