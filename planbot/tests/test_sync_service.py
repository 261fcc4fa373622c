"""Push/pull reconciliation."""
from datetime import timedelta

import pytest
from sqlalchemy import select

from planbot.core.database import get_db_session, task_states
from planbot.features.sync.service import pull, push
from planbot.models.sync import ChatUpsert, MessageUpsert, parse_client_time


def _msg(chat_id="c1", content="hi", role="user", msg_id=None, created_at=None):
    return MessageUpsert(msg_id=msg_id, chat_id=chat_id, role=role, content=content, created_at=created_at)


def test_pull_for_new_user_returns_defaults(now):
    user, snapshot = pull(4001, now=now)
    assert user.plans_left == 3
    assert snapshot.chats == []
    assert snapshot.messages == []
    assert snapshot.tasks_state == {"groups": []}
    assert snapshot.server_time == now


def test_duplicate_msg_id_is_stored_once(now):
    msg = _msg(msg_id="m-1", created_at=now)
    push(4002, messages_upsert=[msg], now=now)
    ack = push(4002, messages_upsert=[msg], now=now)
    assert ack.accepted["messages"] == 1
    _, snapshot = pull(4002, now=now)
    assert [m.msg_id for m in snapshot.messages] == ["m-1"]


def test_resubmitted_msg_id_overwrites_content(now):
    push(4003, messages_upsert=[_msg(msg_id="m-1", content="draft", created_at=now)], now=now)
    push(4003, messages_upsert=[_msg(msg_id="m-1", content="final", created_at=now)], now=now)
    _, snapshot = pull(4003, now=now)
    assert [m.content for m in snapshot.messages] == ["final"]


def test_id_less_messages_pushed_twice_are_duplicated(now):
    batch = [_msg(content=f"note {i}", created_at=now + timedelta(seconds=i)) for i in range(3)]
    push(4004, messages_upsert=batch, now=now)
    push(4004, messages_upsert=batch, now=now)
    _, snapshot = pull(4004, now=now)
    assert len(snapshot.messages) == 6


def test_pull_orders_by_chat_then_created_at_not_arrival(now):
    push(
        4005,
        messages_upsert=[
            _msg(chat_id="b", content="b-late", msg_id="1", created_at=now + timedelta(minutes=2)),
            _msg(chat_id="a", content="a-late", msg_id="2", created_at=now + timedelta(minutes=5)),
            _msg(chat_id="b", content="b-early", msg_id="3", created_at=now),
            _msg(chat_id="a", content="a-early", msg_id="4", created_at=now + timedelta(minutes=1)),
        ],
        now=now,
    )
    _, snapshot = pull(4005, now=now)
    assert [m.content for m in snapshot.messages] == ["a-early", "a-late", "b-early", "b-late"]
    # chat "a" saw the newest message, so it comes first
    assert [c.chat_id for c in snapshot.chats] == ["a", "b"]


def test_since_filters_messages(now):
    push(
        4006,
        messages_upsert=[
            _msg(msg_id="old", created_at=now - timedelta(hours=1)),
            _msg(msg_id="new", created_at=now + timedelta(hours=1)),
        ],
        now=now,
    )
    _, snapshot = pull(4006, since=now, now=now)
    assert [m.msg_id for m in snapshot.messages] == ["new"]


def test_invalid_messages_are_dropped_and_counted(now):
    ack = push(
        4007,
        messages_upsert=[
            _msg(role="system"),
            _msg(chat_id=None),
            _msg(content="   "),
            _msg(content="ok"),
        ],
        now=now,
    )
    assert ack.ok
    assert ack.accepted == {"chats": 0, "messages": 1}
    assert ack.rejected == 3


def test_epoch_milliseconds_are_accepted(now):
    epoch_ms = int(now.timestamp() * 1000)
    push(4008, messages_upsert=[MessageUpsert(chat_id="c1", role="user", content="x", created_at=epoch_ms)], now=now)
    _, snapshot = pull(4008, now=now)
    assert snapshot.messages[0].created_at == now


@pytest.mark.parametrize("raw", [10**20, str(10**20), "9999-12-31T23:00:00-05:00"])
def test_out_of_range_timestamps_are_value_errors(raw):
    with pytest.raises(ValueError):
        parse_client_time(raw)
    assert MessageUpsert(chat_id="c1", role="user", content="x", created_at=raw).created_at is None


def test_messages_create_missing_chat_and_raise_updated_at(now):
    push(4009, messages_upsert=[_msg(chat_id="new-chat", created_at=now + timedelta(minutes=3))], now=now)
    _, snapshot = pull(4009, now=now)
    assert snapshot.chats[0].chat_id == "new-chat"
    assert snapshot.chats[0].updated_at == now + timedelta(minutes=3)


def test_older_message_never_lowers_chat_updated_at(now):
    later = now + timedelta(hours=2)
    push(4010, chats_upsert=[ChatUpsert(chat_id="c1", title="Work", updated_at=later)], now=now)
    push(4010, messages_upsert=[_msg(chat_id="c1", created_at=now)], now=now)
    _, snapshot = pull(4010, now=now)
    assert snapshot.chats[0].updated_at == later


def test_chat_upsert_is_last_writer_wins_on_sent_fields(now):
    push(4011, chats_upsert=[ChatUpsert(chat_id="c1", title="First", emoji="A")], now=now)
    push(4011, chats_upsert=[ChatUpsert(chat_id="c1", title="Second")], now=now + timedelta(minutes=1))
    _, snapshot = pull(4011, now=now)
    chat = snapshot.chats[0]
    assert chat.title == "Second"
    assert chat.emoji == "A"


def test_task_state_replaced_wholesale_and_versioned(now):
    push(4012, tasks_state={"groups": [{"id": 1, "tasks": ["a"]}]}, now=now)
    push(4012, tasks_state={"groups": [{"id": 2}]}, now=now)
    _, snapshot = pull(4012, now=now)
    assert snapshot.tasks_state == {"groups": [{"id": 2}]}
    with get_db_session() as session:
        version = session.execute(
            select(task_states.c.version).where(task_states.c.tg_id == 4012)
        ).scalar()
    assert version == 2


def test_non_object_task_state_stored_as_default(now):
    push(4013, tasks_state=["not", "an", "object"], now=now)
    _, snapshot = pull(4013, now=now)
    assert snapshot.tasks_state == {"groups": []}


def test_push_without_task_state_leaves_it_untouched(now):
    push(4014, tasks_state={"groups": [{"id": 1}]}, now=now)
    push(4014, messages_upsert=[_msg()], now=now)
    _, snapshot = pull(4014, now=now)
    assert snapshot.tasks_state == {"groups": [{"id": 1}]}
