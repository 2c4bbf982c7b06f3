import pytest

from inbox_triage.features.triage.domain import (
    AIActionType,
    BehaviorEventType,
    EmailMessage,
    QueueStatus,
    TrustProfile,
    TrustStage,
)
from inbox_triage.features.triage.queue import QueueConflictError
from inbox_triage.features.triage.session import ActionExecutionError, TriageSession
from inbox_triage.features.triage.trust import TrustController
from inbox_triage.models.api.state_snapshot import SessionSnapshot

NEWSLETTER = "Shop News <news@shop.example>"


def _session(test_settings, audit, mailbox, stage=TrustStage.TRAINING_WHEELS, classifier=None, **overrides):
    config = test_settings(**overrides)
    trust = TrustController(
        "user-123",
        config=config,
        profile=TrustProfile(user_id="user-123", trust_stage=stage),
        audit=audit,
    )
    session = TriageSession(
        "user-123", mailbox=mailbox, classifier=classifier, trust=trust, config=config, audit=audit
    )
    for _ in range(50):
        session.observe(NEWSLETTER, BehaviorEventType.ARCHIVE)
    return session


def _newsletters(count: int, start: int = 0) -> list[EmailMessage]:
    return [
        EmailMessage(id=f"n{i}", sender=NEWSLETTER, subject="This week's deals", account_id="acct-1")
        for i in range(start, start + count)
    ]


@pytest.mark.asyncio
async def test_training_wheels_queues_everything(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)

    result = await session.process_incoming(_newsletters(3))

    assert result.auto_executed == []
    assert len(result.queued) == 3
    assert fake_mailbox.calls == []
    assert all(item.proposed_action is AIActionType.ARCHIVE for item in session.queue.pending_items())


@pytest.mark.asyncio
async def test_approve_executes_and_records_undo(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)
    result = await session.process_incoming(_newsletters(1))
    item_id = result.queued[0].id

    item = await session.approve(item_id)

    assert item.status is QueueStatus.COMPLETED
    assert item.applied_action is AIActionType.ARCHIVE
    assert item.executed_at is not None
    assert fake_mailbox.calls == [("archive", "n0")]
    assert session.trust.profile.approved_actions == 1

    entry = session.undo_log.latest_undoable()
    assert entry.email_id == "n0"
    assert entry.account_id == "acct-1"
    assert entry.undo_data["source"] == "queue"

    undone = await session.undo_latest()
    assert undone.id == entry.id
    assert fake_mailbox.calls[-1] == ("restore", "n0", "INBOX")
    assert session.trust.profile.rejected_actions == 0


@pytest.mark.asyncio
async def test_approving_twice_counts_once(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)
    result = await session.process_incoming(_newsletters(1))
    item_id = result.queued[0].id

    await session.approve(item_id)
    await session.approve(item_id)

    assert session.trust.profile.total_interactions == 1
    assert fake_mailbox.calls == [("archive", "n0")]
    with pytest.raises(QueueConflictError):
        session.reject(item_id)


@pytest.mark.asyncio
async def test_modified_approval(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)
    result = await session.process_incoming(_newsletters(1))

    item = await session.approve(result.queued[0].id, action="delete")

    assert item.applied_action is AIActionType.DELETE
    assert fake_mailbox.calls == [("delete", "n0")]
    assert session.trust.profile.modified_actions == 1


@pytest.mark.asyncio
async def test_reject_feeds_trust_once(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)
    result = await session.process_incoming(_newsletters(1))
    item_id = result.queued[0].id

    session.reject(item_id)
    item = session.reject(item_id)

    assert item.status is QueueStatus.REJECTED
    assert session.trust.profile.rejected_actions == 1
    assert fake_mailbox.calls == []


@pytest.mark.asyncio
async def test_failed_mutation_leaves_item_approved(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)
    result = await session.process_incoming(_newsletters(1))
    item_id = result.queued[0].id
    fake_mailbox.failing.add("archive")

    with pytest.raises(ActionExecutionError) as exc:
        await session.approve(item_id)

    assert exc.value.recoverable is True
    item = session.queue.get(item_id)
    assert item.status is QueueStatus.APPROVED
    assert item.executed_at is None
    assert "archive unavailable" in item.last_error
    assert session.undo_log.latest_undoable() is None

    fake_mailbox.failing.clear()
    item = await session.retry(item_id)

    assert item.status is QueueStatus.COMPLETED
    assert item.last_error is None
    assert session.trust.profile.total_interactions == 1


@pytest.mark.asyncio
async def test_retry_requires_approval_first(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)
    result = await session.process_incoming(_newsletters(1))

    with pytest.raises(QueueConflictError):
        await session.retry(result.queued[0].id)


@pytest.mark.asyncio
async def test_earned_autonomy_auto_executes(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox, stage=TrustStage.EARNED_AUTONOMY)

    result = await session.process_incoming(_newsletters(2))

    assert result.auto_executed == ["n0", "n1"]
    assert result.queued == []
    assert len(session.queue) == 0
    assert {call[0] for call in fake_mailbox.calls} == {"archive"}
    assert session.trust.profile.auto_executed_actions == 2
    assert len(result.undo_entries) == 2

    await session.undo_latest()

    profile = session.trust.profile
    assert profile.rejected_actions == 1
    assert fake_mailbox.calls[-1][0] == "restore"


def _demotable_session(test_settings, audit, mailbox):
    return _session(
        test_settings,
        audit,
        mailbox,
        stage=TrustStage.EARNED_AUTONOMY,
        TRUST_WINDOW_SIZE=2,
        TRAINING_WHEELS_THRESHOLD=1.0,
        BUILDING_CONFIDENCE_THRESHOLD=0.99,
        EARNED_AUTONOMY_THRESHOLD=0.05,
    )


@pytest.mark.asyncio
async def test_demotion_regates_cached_prediction(test_settings, audit, fake_mailbox):
    session = _demotable_session(test_settings, audit, fake_mailbox)
    email = _newsletters(1)[0]

    before = await session.predict(email)
    assert before.final_prediction.requires_approval is False

    session.trust.update_trust_from_action("rejected")
    session.trust.update_trust_from_action("rejected")
    assert session.trust.stage is TrustStage.BUILDING_CONFIDENCE

    after = await session.predict(email)
    assert after.prediction_id == before.prediction_id
    assert after.final_prediction.requires_approval is True


@pytest.mark.asyncio
async def test_demotion_stops_auto_execution_of_cached_prediction(test_settings, audit, fake_mailbox):
    session = _demotable_session(test_settings, audit, fake_mailbox)
    email = _newsletters(1)[0]
    await session.predict(email)

    session.trust.update_trust_from_action("rejected")
    session.trust.update_trust_from_action("rejected")
    result = await session.process_incoming([email])

    assert result.auto_executed == []
    assert [item.email_id for item in result.queued] == ["n0"]
    assert fake_mailbox.calls == []
    assert session.trust.profile.auto_executed_actions == 0


@pytest.mark.asyncio
async def test_auto_execution_respects_batch_cap(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox, stage=TrustStage.BUILDING_CONFIDENCE)

    result = await session.process_incoming(_newsletters(12))

    assert len(result.auto_executed) == 10
    assert len(result.queued) == 2
    assert all(item.status is QueueStatus.PENDING for item in result.queued)


@pytest.mark.asyncio
async def test_auto_execution_failure_falls_back_to_queue(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox, stage=TrustStage.EARNED_AUTONOMY)
    fake_mailbox.failing.add("archive")

    result = await session.process_incoming(_newsletters(1))

    assert result.auto_executed == []
    assert "n0" in result.failed
    item = session.queue.pending_items()[0]
    assert item.email_id == "n0"
    assert item.last_error
    assert session.trust.profile.auto_executed_actions == 0


@pytest.mark.asyncio
async def test_reprocessing_does_not_duplicate_queue_items(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)

    await session.process_incoming(_newsletters(2))
    second = await session.process_incoming(_newsletters(2))

    assert second.queued == []
    assert len(session.queue) == 2


@pytest.mark.asyncio
async def test_keep_recommendations_are_not_queued(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)
    email = EmailMessage(id="k1", sender="friend@example.com", subject="Dinner tonight?")

    result = await session.process_incoming([email])

    assert result.skipped == ["k1"]
    assert len(session.queue) == 0


@pytest.mark.asyncio
async def test_approve_all(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)
    await session.process_incoming(_newsletters(3))

    items = await session.approve_all(lambda item: item.email_id != "n1")

    assert {item.email_id for item in items} == {"n0", "n2"}
    assert all(item.status is QueueStatus.COMPLETED for item in items)
    assert session.trust.profile.approved_actions == 2
    assert [i.email_id for i in session.queue.pending_items()] == ["n1"]


@pytest.mark.asyncio
async def test_observe_invalidates_cached_prediction(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)
    email = _newsletters(1)[0]

    first = await session.predict(email)
    assert (await session.predict(email)).prediction_id == first.prediction_id

    session.observe(NEWSLETTER, BehaviorEventType.ARCHIVE)
    refreshed = await session.predict(email)

    assert refreshed.prediction_id != first.prediction_id


@pytest.mark.asyncio
async def test_smart_suggestions(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox)
    emails = _newsletters(2) + [EmailMessage(id="k1", sender="friend@example.com", subject="Hi")]

    suggestions = await session.smart_suggestions(emails, limit=1)

    assert len(suggestions) == 1
    assert suggestions[0].final_prediction.action is AIActionType.ARCHIVE


@pytest.mark.asyncio
async def test_snapshot_round_trip(test_settings, audit, fake_mailbox):
    session = _session(test_settings, audit, fake_mailbox, stage=TrustStage.BUILDING_CONFIDENCE)
    await session.process_incoming(_newsletters(12))
    pending_id = session.queue.pending_items()[0].id

    payload = session.snapshot().model_dump_json()
    restored = TriageSession.restore(
        SessionSnapshot.from_payload(payload),
        mailbox=fake_mailbox,
        config=test_settings(),
        audit=audit,
    )

    assert restored.trust.stage is TrustStage.BUILDING_CONFIDENCE
    assert restored.trust.auto_approve_threshold == 0.85
    assert restored.trust.profile.auto_executed_actions == 10
    assert restored.senders.get(NEWSLETTER).total_emails == 50
    assert {i.id for i in restored.queue.items()} == {i.id for i in session.queue.items()}
    assert len(restored.undo_log.actions()) == 10

    item = await restored.approve(pending_id)
    assert item.status is QueueStatus.COMPLETED
