"""Memory-augmented correction pipeline.

One invocation runs ``duplicate gate -> Recall -> Apply -> Decide -> Learn``
inside a single database transaction. Nothing is cached between invocations;
identical inputs with the same logical ``now`` produce identical output and
identical persisted state.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy.engine import Engine

from backend.core.observability import get_logger
from backend.core.observability.logging import set_invoice_context

from .audit import AuditEventType, log_event
from .config import PipelineConfig
from .dto import (
    AuditTrailEntry,
    FieldCorrection,
    HumanDecision,
    Invoice,
    MemoryUpdate,
    PipelineOutput,
    ProposedCorrection,
    ReferenceData,
    latest_verdict,
)
from .duplicates import DuplicateGuard, DuplicateMatch, InvoiceRun
from .errors import InvalidInvoiceError
from .heuristics import (
    CATALOGUE,
    CORRECTION_MEMORY,
    VENDOR_MEMORY,
    Candidate,
    Heuristic,
    HeuristicContext,
    heuristic_for_field,
)
from .memory import (
    DISABLED,
    CorrectionMemory,
    CorrectionMemoryEntry,
    LearningLedger,
    ResolutionMemory,
    VendorMemory,
    VendorMemoryEntry,
    untrusted_reason,
)
from .memory.base import iso_timestamp
from .schema import StoreCapabilities, detect_capabilities

logger = get_logger(__name__)

CRITICAL_FIELDS = (
    ("invoiceNumber", "invoice_number"),
    ("invoiceDate", "invoice_date"),
    ("currency", "currency"),
    ("netTotal", "net_total"),
    ("grossTotal", "gross_total"),
)

InvoiceInput = Union[Invoice, Mapping[str, Any]]
ReferenceInput = Union[ReferenceData, Mapping[str, Any], None]
DecisionInput = Union[HumanDecision, Mapping[str, Any]]


class PipelineEngine:
    """Entry point: ``PipelineEngine(engine).run(invoice, reference, decisions, now)``."""

    def __init__(
        self,
        engine: Engine,
        config: Optional[PipelineConfig] = None,
        catalogue: Sequence[Heuristic] = CATALOGUE,
    ):
        self.engine = engine
        self.config = config or PipelineConfig.from_settings()
        self.catalogue = tuple(catalogue)
        self.capabilities = detect_capabilities(engine)

    def run(
        self,
        invoice: InvoiceInput,
        reference: ReferenceInput = None,
        decisions: Iterable[DecisionInput] = (),
        now: Optional[datetime] = None,
        dataset: str = "full",
    ) -> PipelineOutput:
        if isinstance(invoice, Mapping):
            invoice = Invoice.from_dict(invoice)
        if not invoice.invoice_id or not invoice.vendor:
            raise InvalidInvoiceError("invoice_id and vendor are required")
        if not isinstance(reference, ReferenceData):
            reference = ReferenceData.from_dict(reference)
        parsed_decisions = [
            d if isinstance(d, HumanDecision) else HumanDecision.from_dict(d) for d in decisions
        ]
        now = now or datetime.now(timezone.utc)
        config = self.config.for_vendor(invoice.vendor)

        set_invoice_context(invoice.vendor, invoice.invoice_id)
        try:
            with self.engine.begin() as conn:
                invocation = _Invocation(
                    conn=conn,
                    config=config,
                    capabilities=self.capabilities,
                    catalogue=self.catalogue,
                    invoice=invoice,
                    reference=reference.for_vendor(invoice.vendor),
                    verdict=latest_verdict(parsed_decisions, invoice.invoice_id),
                    now=now,
                    dataset=dataset,
                )
                output = invocation.execute()
            logger.info(
                "pipeline_done",
                extra={
                    "dataset": dataset,
                    "proposals": len(output.proposed_corrections),
                    "requires_review": output.requires_human_review,
                    "confidence_score": output.confidence_score,
                    "memory_updates": len(output.memory_updates),
                },
            )
            return output
        finally:
            set_invoice_context(None, None)


class _Invocation:
    """State of one pipeline invocation on an open transaction."""

    def __init__(
        self,
        *,
        conn,
        config: PipelineConfig,
        capabilities: StoreCapabilities,
        catalogue: Tuple[Heuristic, ...],
        invoice: Invoice,
        reference: ReferenceData,
        verdict: Optional[HumanDecision],
        now: datetime,
        dataset: str,
    ):
        self.conn = conn
        self.config = config
        self.catalogue = catalogue
        self.invoice = invoice
        self.reference = reference
        self.verdict = verdict
        self.now = now
        self.timestamp = iso_timestamp(now)
        self.dataset = dataset

        self.vendor_memory = VendorMemory(conn, config)
        self.correction_memory = CorrectionMemory(conn, config, capabilities)
        self.resolution_memory = ResolutionMemory(conn, config, capabilities)
        self.guard = DuplicateGuard(conn)

        self.ctx = HeuristicContext(
            invoice=invoice,
            reference=reference,
            config=config,
            now=now,
            corrections=self.correction_memory,
        )
        self.trail: List[AuditTrailEntry] = []
        self.updates: List[MemoryUpdate] = []
        self.proposals: List[ProposedCorrection] = []
        self.candidates: List[Tuple[Heuristic, Candidate]] = []
        self.used_corrections: Dict[str, CorrectionMemoryEntry] = {}
        self.backing_vendor_entries: Dict[str, VendorMemoryEntry] = {}
        self.resolution_keys: List[str] = []

    @property
    def vendor(self) -> str:
        return self.invoice.vendor

    def note(self, step: str, details: str) -> None:
        self.trail.append(AuditTrailEntry(step=step, timestamp=self.timestamp, details=details))

    def execute(self) -> PipelineOutput:
        run = self.guard.register_run(self.invoice, self.dataset, self.now)
        match = self.guard.detect(self.invoice, run)
        if match is not None:
            return self._duplicate(run, match)

        self._recall()
        self._apply()
        output = self._decide()
        self._learn()
        output.memory_updates = list(self.updates)
        output.audit_trail = list(self.trail)
        return output

    # Duplicate gate

    def _duplicate(self, run: InvoiceRun, match: DuplicateMatch) -> PipelineOutput:
        original = match.duplicate_of_invoice_id
        self.guard.record(
            self.invoice.invoice_id, self.vendor, match.fingerprint, original, match.reason, self.now
        )
        self.guard.mark_run_duplicate(run, original)
        log_event(
            self.conn,
            AuditEventType.DUPLICATE_DETECTED,
            now=self.now,
            vendor=self.vendor,
            invoice_id=self.invoice.invoice_id,
            entity_type="invoice_run",
            entity_id=str(run.id),
            meta={"duplicate_of": original, "reason": match.reason, "rule": match.rule},
        )
        logger.info("duplicate_detected", extra={"duplicate_of": original, "rule": match.rule})

        self.note("recall", f"Duplicate of {original}: {match.reason} Memory recall skipped.")
        self.note("apply", "Skipped: duplicate submission, no heuristics applied.")
        self.note(
            "decide",
            f"Duplicate submission; confidence fixed at {self.config.duplicate_confidence:.2f}, human review required.",
        )
        self.note("learn", "Skipped: duplicates are never learned from.")
        return PipelineOutput(
            normalized_invoice=self.invoice,
            proposed_corrections=[],
            requires_human_review=True,
            reasoning=f"Duplicate of {original}. {match.reason}",
            confidence_score=self.config.duplicate_confidence,
            memory_updates=[],
            audit_trail=list(self.trail),
        )

    # Recall

    def _recall(self) -> None:
        vendor_entries = self.vendor_memory.active_for_vendor(self.vendor)
        correction_entries = self.correction_memory.for_vendor(self.vendor)
        self.note(
            "recall",
            f"Recalled {len(vendor_entries)} active vendor memory entries and "
            f"{len(correction_entries)} correction memory entries for {self.vendor}.",
        )
        for entry in vendor_entries:
            reason = untrusted_reason(entry, self.now, self.config)
            if reason:
                self.note("recall", f"Vendor memory {entry.key} not trusted: {reason}.")

    # Apply

    def _apply(self) -> None:
        for heuristic in self.catalogue:
            for candidate in heuristic.detect(self.ctx):
                self._apply_candidate(heuristic, candidate)
        for message in self.ctx.notes:
            self.note("apply", message)
        if not self.proposals:
            self.note("apply", "No corrections proposed.")

    def _apply_candidate(self, heuristic: Heuristic, candidate: Candidate) -> None:
        if candidate.correction_memory is not None:
            entry = self.correction_memory.mark_used(candidate.correction_memory, self.now)
            self.used_corrections[entry.id] = entry
            self._update(
                self.correction_memory.store_name, "marked_used", entry.id, entry.key,
                entry.confidence, entry.status, f"used as fallback for {heuristic.name}",
            )
            base = heuristic.fallback_confidence or heuristic.heuristic_confidence
            source = CORRECTION_MEMORY
        else:
            memory = self.vendor_memory.lookup(self.vendor, heuristic.kind, candidate.pattern)
            reason = untrusted_reason(memory, self.now, self.config) if memory else None
            if memory is not None and reason is None:
                self.backing_vendor_entries[memory.id] = memory
                base = heuristic.base_confidence(memory_backed=True)
                source = VENDOR_MEMORY
            else:
                if memory is not None:
                    self.note("apply", f"Vendor memory {memory.key} skipped: {reason}.")
                base = heuristic.base_confidence(memory_backed=False)
                source = candidate.source

        confidence, resolution_note = self.resolution_memory.adjust_confidence(
            self.vendor, heuristic.resolution_key, base
        )
        if resolution_note:
            self.note("apply", resolution_note)
        if heuristic.resolution_key not in self.resolution_keys:
            self.resolution_keys.append(heuristic.resolution_key)

        corrections = heuristic.apply(candidate, confidence, source)
        self.proposals.extend(corrections)
        self.candidates.append((heuristic, candidate))
        fields = ", ".join(candidate.fields)
        self.note("apply", f"{heuristic.name}: {fields} via {source} at {confidence:.2f}. {candidate.reason}")

    # Decide

    def _decide(self) -> PipelineOutput:
        normalized = self.invoice.with_corrections(self.proposals)
        missing = [path for path, attr in CRITICAL_FIELDS if getattr(normalized, attr) in (None, "")]
        po_suggested = any(
            p.field == "poNumber" and p.confidence >= self.config.review_threshold for p in self.proposals
        )
        if not self.invoice.po_number and not po_suggested:
            missing.append("poNumber")

        low = [p for p in self.proposals if p.confidence < self.config.review_threshold]
        if self.proposals:
            score = min(p.confidence for p in self.proposals)
        elif self.invoice.confidence is not None:
            score = self.invoice.confidence
        else:
            score = self.config.default_extraction_confidence
        requires_review = bool(low or missing)

        parts = [f"Proposed {len(self.proposals)} correction(s)."]
        if low:
            parts.append(
                f"{len(low)} below review threshold {self.config.review_threshold:.2f} "
                f"({', '.join(p.field for p in low)})."
            )
        if missing:
            parts.append(f"Missing critical fields: {', '.join(missing)}.")
        if not requires_review:
            parts.append("All corrections meet the review threshold; auto-accept possible.")
        reasoning = " ".join(parts)
        self.note("decide", f"{reasoning} Confidence score {score:.2f}.")

        return PipelineOutput(
            normalized_invoice=normalized,
            proposed_corrections=list(self.proposals),
            requires_human_review=requires_review,
            reasoning=reasoning,
            confidence_score=score,
        )

    # Learn

    def _learn(self) -> None:
        if self.verdict is None:
            self.note("learn", "No human verdict for this invoice; nothing learned.")
            return
        ledger = LearningLedger(self.conn)
        prior = ledger.get(self.invoice.invoice_id)
        if prior is not None:
            self.note(
                "learn",
                f"Already learned from this invoice ({prior.decision} at {prior.learned_at}); "
                "no memory changes.",
            )
            logger.info("learn_skipped", extra={"reason": "already_learned", "decision": prior.decision})
            return

        decision = self.verdict.final_decision
        if decision == "approved":
            self._learn_approved(self.verdict.corrections)
        else:
            self._learn_rejected()
        self._learn_resolutions(decision)
        ledger.record(self.invoice.invoice_id, decision, self.now)
        self.note("learn", f"Learned from {decision} verdict; {len(self.updates)} memory update(s).")

    def _candidate_pattern(self, heuristic: Heuristic, field_path: str) -> Optional[str]:
        fallback = None
        for fired, candidate in self.candidates:
            if fired is not heuristic or candidate.correction_memory is not None:
                continue
            if field_path in candidate.fields:
                return candidate.pattern
            fallback = fallback or candidate.pattern
        return fallback

    def _learn_approved(self, corrections: Iterable[FieldCorrection]) -> None:
        seen_vendor = set()
        seen_correction = set()
        for correction in corrections:
            heuristic = heuristic_for_field(correction.field, self.catalogue)
            if heuristic is None:
                self.note("learn", f"No heuristic maps field {correction.field}; not learned.")
                continue

            pattern = self._candidate_pattern(heuristic, correction.field) or heuristic.memory_pattern(
                correction, self.ctx
            )
            if pattern and (heuristic.kind, pattern) not in seen_vendor:
                seen_vendor.add((heuristic.kind, pattern))
                existed = self.vendor_memory.lookup(self.vendor, heuristic.kind, pattern) is not None
                entry = self.vendor_memory.record_approval(self.vendor, heuristic.kind, pattern, self.now)
                self._event(
                    AuditEventType.LEARN_APPROVED, "vendor_memory", entry.id,
                    {"kind": entry.kind, "pattern": entry.pattern, "confidence": entry.confidence},
                )
                self._update(
                    self.vendor_memory.store_name, "approved" if existed else "created", entry.id,
                    entry.key, entry.confidence, entry.status, f"approved correction of {correction.field}",
                )

            key = heuristic.correction_key(correction, self.ctx)
            if key and key[:3] not in seen_correction:
                seen_correction.add(key[:3])
                field_path, pattern_type, pattern_value, value = key
                existed = (
                    self.correction_memory.find(self.vendor, field_path, pattern_type, pattern_value) is not None
                )
                entry = self.correction_memory.record_approval(
                    self.vendor, field_path, pattern_type, pattern_value, value, self.now
                )
                self._event(
                    AuditEventType.LEARN_APPROVED, "correction_memory", entry.id,
                    {"key": entry.key, "recommended_value": entry.decoded_value(), "confidence": entry.confidence},
                )
                self._update(
                    self.correction_memory.store_name, "approved" if existed else "created", entry.id,
                    entry.key, entry.confidence, entry.status, f"approved value for {correction.field}",
                )

    def _learn_rejected(self) -> None:
        for entry in self.used_corrections.values():
            updated = self.correction_memory.record_rejection(entry, self.now)
            self._event(
                AuditEventType.LEARN_REJECTED, "correction_memory", updated.id,
                {"key": updated.key, "confidence": updated.confidence, "reject_count": updated.reject_count},
            )
            self._update(
                self.correction_memory.store_name, "rejected", updated.id, updated.key,
                updated.confidence, updated.status, "used in a rejected correction set",
            )
            if updated.status == DISABLED and entry.status != DISABLED:
                self._disabled("correction_memory", updated.id, updated.key, updated.reject_count)

        for entry in self.backing_vendor_entries.values():
            updated = self.vendor_memory.record_rejection(entry, self.now)
            self._event(
                AuditEventType.LEARN_REJECTED, "vendor_memory", updated.id,
                {"key": updated.key, "confidence": updated.confidence, "reject_count": updated.reject_count},
            )
            self._update(
                self.vendor_memory.store_name, "rejected", updated.id, updated.key,
                updated.confidence, updated.status, "backed a rejected correction",
            )
            if updated.status == DISABLED and entry.status != DISABLED:
                self._disabled("vendor_memory", updated.id, updated.key, updated.reject_count)

    def _learn_resolutions(self, decision: str) -> None:
        for key in self.resolution_keys:
            before = self.resolution_memory.get_any(self.vendor, key)
            entry = self.resolution_memory.record_decision(
                self.vendor, key, decision, self.invoice.invoice_id, self.now
            )
            event_type = AuditEventType.LEARN_APPROVED if decision == "approved" else AuditEventType.LEARN_REJECTED
            self._event(
                event_type, "resolution_memory", entry.id,
                {
                    "key": key,
                    "approved": entry.tally.approved,
                    "rejected": entry.tally.rejected,
                    "confidence": entry.confidence,
                },
            )
            self._update(
                self.resolution_memory.store_name, "decision_recorded", entry.id, key,
                entry.confidence, entry.status, f"{decision} (approved={entry.tally.approved}, rejected={entry.tally.rejected})",
            )
            if entry.disabled and not (before is not None and before.disabled):
                self._disabled("resolution_memory", entry.id, key, entry.tally.rejected)

    def _disabled(self, entity_type: str, entity_id: str, key: str, reject_count: int) -> None:
        self._event(
            AuditEventType.MEMORY_DISABLED, entity_type, entity_id,
            {"key": key, "reject_count": reject_count},
        )
        self._update(entity_type, "disabled", entity_id, key, None, DISABLED, f"rejected {reject_count} times")

    def _event(self, event_type: AuditEventType, entity_type: str, entity_id: str, meta: dict) -> None:
        log_event(
            self.conn,
            event_type,
            now=self.now,
            vendor=self.vendor,
            invoice_id=self.invoice.invoice_id,
            entity_type=entity_type,
            entity_id=entity_id,
            meta=meta,
        )

    def _update(
        self,
        store: str,
        action: str,
        entry_id: str,
        key: str,
        confidence: Optional[float],
        status: Optional[str],
        reason: str,
    ) -> None:
        self.updates.append(
            MemoryUpdate(
                store=store,
                action=action,
                entry_id=entry_id,
                vendor=self.vendor,
                key=key,
                confidence=confidence,
                status=status,
                reason=reason,
            )
        )
