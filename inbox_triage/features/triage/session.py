"""
Triage session - one user's decision engine, wired end to end.

    observe -> sender model -> Tier 1 (-> Tier 3) -> ensemble
        -> auto-execute (undo entry pushed)   when requires_approval is False
        -> action queue                       otherwise
    queue disposition -> trust profile -> next auto-approve threshold

Every collaborator is owned by the session, so two users never share a
cache entry, a queue or a trust profile.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from inbox_triage.config import Settings, settings
from inbox_triage.features.triage.classifier import SemanticClassifier
from inbox_triage.features.triage.domain.models import (
    ADVISORY_ACTIONS,
    ActionQueueItem,
    AIActionType,
    BehaviorEventType,
    DispositionOutcome,
    EmailMessage,
    PredictionResult,
    QueueStatus,
    SenderModel,
    UndoableAction,
)
from inbox_triage.features.triage.execution import (
    MailboxClient,
    MailboxMutationError,
    MutationRecord,
    UndoLog,
    execute_action,
    reverse_action,
)
from inbox_triage.features.triage.predictors import EnsemblePredictor, StatisticalPredictor
from inbox_triage.features.triage.queue import (
    ActionQueue,
    QueueConflictError,
    QueueItemNotFoundError,
    TransitionResult,
)
from inbox_triage.features.triage.senders import SenderBehaviorService
from inbox_triage.features.triage.trust import TrustController
from inbox_triage.infrastructure.audit import AuditLogger, audit_logger
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.main import bootstrap
from inbox_triage.models.api.state_snapshot import SessionSnapshot

logger = get_logger(__name__)

AUTO_SOURCE = "auto"
QUEUE_SOURCE = "queue"


class ActionExecutionError(Exception):
    """An approved action could not be applied to the mailbox."""

    def __init__(self, message: str, item_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.item_id = item_id
        self.recoverable = recoverable


@dataclass
class IncomingBatchResult:
    """What ``process_incoming`` did with each email."""

    predictions: dict[str, PredictionResult] = field(default_factory=dict)
    auto_executed: list[str] = field(default_factory=list)
    undo_entries: list[UndoableAction] = field(default_factory=list)
    queued: list[ActionQueueItem] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class TriageSession:
    def __init__(
        self,
        user_id: str,
        *,
        mailbox: MailboxClient,
        classifier: SemanticClassifier | None = None,
        senders: SenderBehaviorService | None = None,
        trust: TrustController | None = None,
        queue: ActionQueue | None = None,
        undo_log: UndoLog | None = None,
        config: Settings = settings,
        audit: AuditLogger = audit_logger,
    ):
        bootstrap(config)
        self.user_id = user_id
        self.config = config
        self.mailbox = mailbox
        self.audit = audit
        self.senders = senders or SenderBehaviorService(user_id, config=config, audit=audit)
        self.trust = trust or TrustController(user_id, config=config, audit=audit)
        self.queue = queue or ActionQueue(config=config)
        self.undo_log = undo_log or UndoLog(config=config)
        if self.undo_log.reverser is None:
            self.undo_log.reverser = self._reverse
        self.ensemble = EnsemblePredictor(
            trust=self.trust,
            statistical=StatisticalPredictor(config),
            classifier=classifier,
            config=config,
        )

    # ------------------------------------------------------------------
    # Learning and prediction
    # ------------------------------------------------------------------

    def observe(
        self,
        sender_email: str,
        action: BehaviorEventType | str,
        **details,
    ) -> SenderModel:
        """Record a user action and drop predictions built on the old model."""
        model = self.senders.update(sender_email, action, **details)
        self.ensemble.invalidate_sender(model.sender_id)
        return model

    async def predict(
        self, email: EmailMessage, *, force_refresh: bool = False, now: datetime | None = None
    ) -> PredictionResult:
        model = self.senders.get(email.sender)
        return await self.ensemble.predict(
            email, self.user_id, model, force_refresh=force_refresh, now=now
        )

    async def predict_batch(
        self,
        emails: Iterable[EmailMessage],
        *,
        force_refresh: bool = False,
        now: datetime | None = None,
    ) -> dict[str, PredictionResult]:
        return await self.ensemble.predict_batch(
            emails, self.user_id, self.senders.models(), force_refresh=force_refresh, now=now
        )

    async def smart_suggestions(
        self, emails: Iterable[EmailMessage], limit: int = 5
    ) -> list[PredictionResult]:
        """Most confident non-keep recommendations above the suggestion threshold."""
        predictions = await self.predict_batch(emails)
        candidates = [
            p
            for p in predictions.values()
            if p.final_prediction.action is not AIActionType.KEEP
            and p.final_prediction.confidence >= self.config.SUGGESTION_THRESHOLD
        ]
        candidates.sort(key=lambda p: p.final_prediction.confidence, reverse=True)
        return candidates[:limit]

    # ------------------------------------------------------------------
    # Incoming mail
    # ------------------------------------------------------------------

    async def process_incoming(
        self, emails: Iterable[EmailMessage], *, now: datetime | None = None
    ) -> IncomingBatchResult:
        """
        Predict a batch and route every email.

        Confident mutations run immediately, up to the current stage's
        per-batch cap, each with an undo entry. Everything else worth
        suggesting goes to the action queue. A mutation that fails during
        auto-execution is queued for manual approval instead.
        """
        emails = list(emails)
        by_id = {email.id: email for email in emails}
        result = IncomingBatchResult(predictions=await self.predict_batch(emails, now=now))
        cap = self.trust.auto_execute_cap
        to_queue: list[ActionQueueItem] = []
        already_queued = {
            item.email_id
            for item in self.queue.items()
            if item.status in (QueueStatus.PENDING, QueueStatus.APPROVED)
        }

        for email_id, prediction in result.predictions.items():
            email = by_id[email_id]
            final = prediction.final_prediction
            if email_id in already_queued:
                result.skipped.append(email_id)
                continue

            can_auto = (
                final.confidence >= self.trust.auto_approve_threshold
                and final.action not in ADVISORY_ACTIONS
                and len(result.auto_executed) < cap
            )
            if can_auto:
                try:
                    record = await execute_action(
                        self.mailbox, final.action, email.id, subject=email.subject
                    )
                except MailboxMutationError as e:
                    logger.warning(
                        "Auto-execution failed, queuing for approval",
                        user_id=self.user_id,
                        email_id=email.id,
                        action=final.action.value,
                        error=str(e),
                    )
                    result.failed[email.id] = str(e)
                    item = self.ensemble.create_action_queue_item(prediction, email, email.account_id)
                    item.last_error = str(e)
                    to_queue.append(item)
                    continue

                result.auto_executed.append(email.id)
                entry = self._push_undo(record, email.account_id, AUTO_SOURCE, prediction.prediction_id)
                if entry is not None:
                    result.undo_entries.append(entry)
                self.trust.record_auto_execution()
                continue

            if final.action is AIActionType.KEEP:
                result.skipped.append(email.id)
            elif final.confidence >= self.config.SUGGESTION_THRESHOLD:
                to_queue.append(self.ensemble.create_action_queue_item(prediction, email, email.account_id))
            else:
                result.skipped.append(email.id)

        if to_queue:
            self.queue.add_items(to_queue)
        result.queued = to_queue

        logger.info(
            "Incoming batch processed",
            user_id=self.user_id,
            emails=len(emails),
            auto_executed=len(result.auto_executed),
            queued=len(to_queue),
            skipped=len(result.skipped),
            failed=len(result.failed),
            trust_stage=self.trust.stage.value,
        )
        return result

    # ------------------------------------------------------------------
    # Queue disposition
    # ------------------------------------------------------------------

    async def approve(self, item_id: str, action: AIActionType | str | None = None) -> ActionQueueItem:
        """
        Approve a pending item, optionally with a different action.

        Approving with a different action counts as ``modified`` for trust.
        Approving an item that is already approved or completed is a no-op and does not
        touch trust; use ``retry`` to re-run a failed mutation.

        Raises:
            QueueItemNotFoundError: Unknown id
            QueueConflictError: Item was already rejected
            ActionExecutionError: The mailbox mutation failed; the item stays
                approved with ``last_error`` set
        """
        item = self.queue.get(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        if item.status is QueueStatus.COMPLETED:
            return item
        chosen = AIActionType(action) if action is not None else item.proposed_action

        if self.queue.update_status(item_id, QueueStatus.APPROVED) is TransitionResult.NOOP:
            return self.queue.get(item_id)

        outcome = (
            DispositionOutcome.MODIFIED
            if chosen is not item.proposed_action
            else DispositionOutcome.APPROVED
        )
        self.trust.update_trust_from_action(outcome)
        self.queue.set_applied_action(item_id, chosen)
        return await self._execute_item(item_id)

    def reject(self, item_id: str) -> ActionQueueItem:
        """Reject a pending item. Rejecting twice is a no-op."""
        if self.queue.update_status(item_id, QueueStatus.REJECTED) is TransitionResult.APPLIED:
            self.trust.update_trust_from_action(DispositionOutcome.REJECTED)
        return self.queue.get(item_id)

    async def approve_all(
        self, predicate: Callable[[ActionQueueItem], bool] | None = None
    ) -> list[ActionQueueItem]:
        """
        Approve every matching pending item, then execute each one.

        The approval itself is a single queue step. Execution failures do not
        stop the batch: those items stay approved with ``last_error`` set.
        """
        approved = self.queue.approve_all(predicate)
        results: list[ActionQueueItem] = []
        for item in approved:
            self.trust.update_trust_from_action(DispositionOutcome.APPROVED)
            self.queue.set_applied_action(item.id, item.proposed_action)
            try:
                results.append(await self._execute_item(item.id))
            except ActionExecutionError:
                results.append(self.queue.get(item.id))
        return results

    async def retry(self, item_id: str) -> ActionQueueItem:
        """
        Re-run the mutation of an approved item whose execution failed.

        Raises:
            QueueItemNotFoundError: Unknown id
            QueueConflictError: Item is pending or rejected
            ActionExecutionError: The mutation failed again
        """
        item = self.queue.get(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        if item.status is QueueStatus.COMPLETED:
            return item
        if item.status is not QueueStatus.APPROVED:
            raise QueueConflictError(item_id, item.status, QueueStatus.COMPLETED)
        return await self._execute_item(item_id)

    async def _execute_item(self, item_id: str) -> ActionQueueItem:
        item = self.queue.get(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        action = item.applied_action or item.proposed_action

        if action not in ADVISORY_ACTIONS:
            try:
                record = await execute_action(
                    self.mailbox, action, item.email_id, subject=item.email_subject
                )
            except MailboxMutationError as e:
                self.queue.record_error(item_id, str(e))
                logger.warning(
                    "Approved action failed",
                    user_id=self.user_id,
                    item_id=item_id,
                    action=action.value,
                    error=str(e),
                )
                raise ActionExecutionError(
                    f"Could not {action.value} email {item.email_id}: {e}", item_id=item_id
                ) from e
            self._push_undo(record, item.account_id, QUEUE_SOURCE, item.prediction.prediction_id)

        self.queue.update_status(item_id, QueueStatus.COMPLETED)
        return self.queue.get(item_id)

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    async def undo_latest(self) -> UndoableAction | None:
        """Undo the newest undoable mutation; undoing an auto action counts as a rejection."""
        entry = await self.undo_log.undo_latest()
        if entry is not None:
            self._after_undo(entry)
        return entry

    async def undo_action(self, action_id: str) -> UndoableAction:
        entry = await self.undo_log.undo_action(action_id)
        self._after_undo(entry)
        return entry

    def _after_undo(self, entry: UndoableAction) -> None:
        if entry.undo_data.get("source") == AUTO_SOURCE:
            self.trust.update_trust_from_action(DispositionOutcome.REJECTED)

    async def _reverse(self, entry: UndoableAction) -> None:
        await reverse_action(self.mailbox, entry)

    def _push_undo(
        self, record: MutationRecord, account_id: str, source: str, prediction_id: str
    ) -> UndoableAction | None:
        if not record.reversible:
            return None
        return self.undo_log.push(
            type=record.action.value,
            email_id=record.email_id,
            account_id=account_id,
            description=record.description,
            undo_data={**record.undo_data, "source": source, "prediction_id": prediction_id},
            user_id=self.user_id,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            user_id=self.user_id,
            senders=list(self.senders.models().values()),
            trust_profile=self.trust.profile,
            auto_approve_threshold=self.trust.auto_approve_threshold,
            queue_items=self.queue.snapshot_items(self.config.ACTION_QUEUE_PERSISTED_ITEMS),
            undo_actions=self.undo_log.actions(),
        )

    @classmethod
    def restore(
        cls,
        snapshot: SessionSnapshot,
        *,
        mailbox: MailboxClient,
        classifier: SemanticClassifier | None = None,
        config: Settings = settings,
        audit: AuditLogger = audit_logger,
    ) -> TriageSession:
        """Rebuild a session from a snapshot. The trust threshold is re-derived, never read back."""
        trust = TrustController(
            snapshot.user_id, config=config, profile=snapshot.trust_profile, audit=audit
        )
        session = cls(
            snapshot.user_id,
            mailbox=mailbox,
            classifier=classifier,
            trust=trust,
            config=config,
            audit=audit,
        )
        session.senders.load(snapshot.senders)
        session.queue.load(snapshot.queue_items)
        session.undo_log.load(snapshot.undo_actions)
        logger.info(
            "Session restored",
            user_id=snapshot.user_id,
            schema_version=snapshot.schema_version,
            senders=len(snapshot.senders),
            queue_items=len(snapshot.queue_items),
            trust_stage=trust.stage.value,
        )
        return session
