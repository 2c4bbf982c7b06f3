import pytest

from inbox_triage.features.triage.domain import AIActionType, UndoableAction
from inbox_triage.features.triage.domain.models import utcnow
from inbox_triage.features.triage.execution import (
    MailboxClient,
    MailboxMutationError,
    execute_action,
    reverse_action,
)


def _entry(action: AIActionType, undo_data: dict) -> UndoableAction:
    now = utcnow()
    return UndoableAction(
        id="undo_1",
        type=action.value,
        email_id="m1",
        account_id="acct-1",
        description="",
        user_id="user-123",
        performed_at=now,
        expires_at=now,
        undo_data=undo_data,
    )


def test_fake_mailbox_satisfies_protocol(fake_mailbox):
    assert isinstance(fake_mailbox, MailboxClient)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("action", "call"),
    [
        (AIActionType.ARCHIVE, ("archive", "m1")),
        (AIActionType.DELETE, ("delete", "m1")),
        (AIActionType.STAR, ("star", "m1", True)),
        (AIActionType.MARK_READ, ("mark_read", "m1")),
        (AIActionType.UNSUBSCRIBE, ("unsubscribe", "m1")),
    ],
)
async def test_each_action_maps_to_one_mutation(fake_mailbox, action, call):
    record = await execute_action(fake_mailbox, action, "m1", subject="Hello")

    assert fake_mailbox.calls == [call]
    assert record.action is action
    assert record.reversible is (action is not AIActionType.UNSUBSCRIBE)


@pytest.mark.asyncio
async def test_snooze_records_wake_time(fake_mailbox):
    record = await execute_action(fake_mailbox, AIActionType.SNOOZE, "m1")

    name, email_id, until = fake_mailbox.calls[0]
    assert (name, email_id) == ("snooze", "m1")
    assert record.undo_data["snooze_until"] == until.isoformat()


@pytest.mark.asyncio
@pytest.mark.parametrize("action", [AIActionType.KEEP, AIActionType.REPLY])
async def test_advisory_actions_have_no_mutation(fake_mailbox, action):
    with pytest.raises(ValueError):
        await execute_action(fake_mailbox, action, "m1")
    assert fake_mailbox.calls == []


@pytest.mark.asyncio
async def test_client_failure_is_wrapped(fake_mailbox):
    fake_mailbox.failing.add("archive")

    with pytest.raises(MailboxMutationError) as exc:
        await execute_action(fake_mailbox, AIActionType.ARCHIVE, "m1")

    assert exc.value.recoverable is True
    assert exc.value.email_id == "m1"
    assert exc.value.action == "archive"


@pytest.mark.asyncio
async def test_reverse_restores_folder(fake_mailbox):
    await reverse_action(fake_mailbox, _entry(AIActionType.ARCHIVE, {"original_folder": "INBOX"}))
    await reverse_action(fake_mailbox, _entry(AIActionType.STAR, {"original_is_starred": False}))
    await reverse_action(fake_mailbox, _entry(AIActionType.MARK_READ, {"original_is_read": False}))

    assert fake_mailbox.calls == [
        ("restore", "m1", "INBOX"),
        ("star", "m1", False),
        ("mark_unread", "m1"),
    ]


@pytest.mark.asyncio
async def test_unsubscribe_cannot_be_reversed(fake_mailbox):
    with pytest.raises(ValueError):
        await reverse_action(fake_mailbox, _entry(AIActionType.UNSUBSCRIBE, {}))
