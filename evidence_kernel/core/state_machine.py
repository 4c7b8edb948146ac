"""
State machine enforcer for sealed evidence.

Two flows share the append-only state_history table:
  ledger:          DRAFT -> SEALED | QUARANTINED (seal path only) -> REJECTED
  classification:  RAW -> CLASSIFIED -> STRUCTURED, with REJECTED reachable from RAW and CLASSIFIED

The evidence row is never updated; the current state of a flow is its latest history entry.
"""

import sqlite3
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from util.logging import logger

from . import audit as events
from .audit import AuditTrail
from .dao import EvidenceRepository, StateHistoryRepository
from .db import transaction
from .errors import ImmutableConflictError, InvalidTransitionError, NotFoundError
from .schema import AuditOutcome, ClassificationState, LedgerState, SealedEvidence, StateTransition

LEDGER = "ledger"
CLASSIFICATION = "classification"

LEDGER_TRANSITIONS: Dict[str, List[str]] = {
    LedgerState.DRAFT.value: [LedgerState.SEALED.value, LedgerState.QUARANTINED.value],
    LedgerState.SEALED.value: [LedgerState.REJECTED.value],
    LedgerState.QUARANTINED.value: [LedgerState.REJECTED.value],
    LedgerState.REJECTED.value: [],
}

CLASSIFICATION_TRANSITIONS: Dict[str, List[str]] = {
    ClassificationState.RAW.value: [ClassificationState.CLASSIFIED.value, ClassificationState.REJECTED.value],
    ClassificationState.CLASSIFIED.value: [ClassificationState.STRUCTURED.value, ClassificationState.REJECTED.value],
    ClassificationState.STRUCTURED.value: [],
    ClassificationState.REJECTED.value: [],
}

FLOWS = {LEDGER: LEDGER_TRANSITIONS, CLASSIFICATION: CLASSIFICATION_TRANSITIONS}

# Reached only by sealing, never through transition()
SEAL_PATH_ONLY = {(LedgerState.DRAFT.value, LedgerState.SEALED.value),
                  (LedgerState.DRAFT.value, LedgerState.QUARANTINED.value)}


def allowed_transitions(flow: str, current_state: str) -> List[str]:
    table = FLOWS.get(flow, {})
    return [to for to in table.get(current_state, []) if (current_state, to) not in SEAL_PATH_ONLY]


@dataclass
class TransitionResult:
    evidence_id: str
    flow: str
    state: str
    transition: StateTransition
    state_history: List[StateTransition] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "evidence_id": self.evidence_id,
            "flow": self.flow,
            "state": self.state,
            "transition": self.transition.to_dict(),
            "state_history": [t.to_dict() for t in self.state_history],
        }


class StateMachine:
    """Validates and records every evidence state transition."""

    def __init__(self, evidence: EvidenceRepository, history: StateHistoryRepository, audit: AuditTrail,
                 clock, db_path: Optional[str] = None):
        self.evidence = evidence
        self.history = history
        self.audit = audit
        self.clock = clock
        self.db_path = db_path

    def initial_entries(self, evidence: SealedEvidence, actor: str) -> List[StateTransition]:
        """History written by the seal itself: the ledger outcome and the classification start."""
        now = evidence.sealed_at
        return [
            StateTransition(evidence.evidence_id, evidence.tenant_id, LEDGER, 1, LedgerState.DRAFT.value,
                            evidence.ledger_state.value, "sealed", actor, now),
            StateTransition(evidence.evidence_id, evidence.tenant_id, CLASSIFICATION, 1, None,
                            ClassificationState.RAW.value, "sealed", actor, now),
        ]

    def load(self, tenant_id: str, evidence_id: str,
             conn: Optional[sqlite3.Connection] = None) -> SealedEvidence:
        """Evidence with its full state history; NotFoundError outside the tenant."""
        evidence = self.evidence.get(tenant_id, evidence_id, conn)
        if evidence is None:
            raise NotFoundError(f"Evidence {evidence_id} not found")
        evidence.state_history = self.history.list_for_evidence(tenant_id, evidence_id, conn=conn)
        return evidence

    def transition(self, tenant_id: str, evidence_id: str, from_state: Optional[str], to_state: str, reason: str,
                   actor: str, correlation_id: str, flow: str = LEDGER) -> TransitionResult:
        """
        Move one flow of an evidence record to a new state.

        Any rejection is recorded as STATE_TRANSITION_BLOCKED in its own
        transaction before the error propagates.
        """
        try:
            with transaction(self.db_path) as conn:
                evidence = self.load(tenant_id, evidence_id, conn)
                entry = self._validate(evidence, flow, from_state, to_state, reason, actor)
                try:
                    self.history.append(entry, conn)
                except sqlite3.IntegrityError:
                    raise InvalidTransitionError(
                        "Concurrent transition already applied", entry.from_state, to_state,
                        allowed_transitions(flow, entry.from_state),
                    )
                self.audit.log(
                    tenant_id, correlation_id, events.STATE_TRANSITIONED, evidence_id, actor,
                    {"flow": flow, "from_state": entry.from_state, "to_state": to_state, "reason": reason},
                    conn=conn,
                )
                history = self.history.list_for_evidence(tenant_id, evidence_id, conn=conn)
        except (InvalidTransitionError, NotFoundError) as e:
            logger.log_transition(tenant_id, evidence_id, flow, str(from_state), str(to_state),
                                  status="blocked", reason=e.message)
            self.audit.log(
                tenant_id, correlation_id, events.STATE_TRANSITION_BLOCKED, evidence_id, actor,
                {"flow": flow, "from_state": from_state, "to_state": to_state, "reason": reason,
                 **e.to_dict()},
                AuditOutcome.REJECTED,
            )
            raise

        logger.log_transition(tenant_id, evidence_id, flow, entry.from_state, to_state, reason=reason)
        return TransitionResult(evidence_id, flow, to_state, entry, history)

    def _validate(self, evidence: SealedEvidence, flow: str, from_state: Optional[str], to_state: str,
                  reason: str, actor: str) -> StateTransition:
        if flow not in FLOWS:
            raise InvalidTransitionError(f"Unknown flow: {flow}", "", str(to_state), [])

        current = evidence.current_state(flow)
        allowed = allowed_transitions(flow, current)

        if to_state not in FLOWS[flow]:
            raise InvalidTransitionError(f"Unknown {flow} state: {to_state}", current, str(to_state), allowed)
        if from_state is not None and from_state != current:
            raise InvalidTransitionError(
                f"Stale from_state {from_state}; current {flow} state is {current}", current, to_state, allowed)
        if flow == CLASSIFICATION and evidence.current_state(LEDGER) == LedgerState.REJECTED.value:
            raise InvalidTransitionError("Evidence is rejected; classification is closed", current, to_state, [])
        if to_state not in allowed:
            raise InvalidTransitionError(f"Transition {current} -> {to_state} is not allowed", current, to_state,
                                         allowed)
        if not reason or not reason.strip():
            raise InvalidTransitionError("A reason is required for every transition", current, to_state, allowed)

        latest = max((t.sequence for t in evidence.state_history if t.flow == flow), default=0)
        return StateTransition(
            evidence_id=evidence.evidence_id,
            tenant_id=evidence.tenant_id,
            flow=flow,
            sequence=latest + 1,
            from_state=current,
            to_state=to_state,
            reason=reason.strip(),
            actor=actor,
            transitioned_at=self.clock.now(),
        )

    def reject_mutation(self, tenant_id: str, evidence_id: str, actor: str, correlation_id: str,
                        attempted_fields: List[str]):
        """Any direct edit of sealed evidence is a conflict; the attempt is audited."""
        self.load(tenant_id, evidence_id)
        error = ImmutableConflictError(f"Evidence {evidence_id} is sealed and cannot be modified",
                                       attempted_fields=attempted_fields)
        self.audit.log_rejection(tenant_id, correlation_id, events.EVIDENCE_MUTATION_BLOCKED, evidence_id, actor,
                                 error)
        raise error
