import pytest

from messenger.errors import AccessDenied, ChatNotFound, MessageChatMismatch, MessageNotFound, SenderNotMember
from messenger.membership import MembershipStore
from messenger.messages import MessageStore
from messenger.models import MessageType
from messenger.unread import UnreadProjector


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def group(session, make_user):
    owner, u2, u3 = await make_user(), await make_user(), await make_user()
    membership = MembershipStore(session)
    chat = await membership.create_group_chat(owner.id, "g")
    await membership.add_members(chat.id, owner.id, [u2.id, u3.id])
    return chat, owner, u2, u3


async def test_append_requires_membership(session, group, make_user):
    chat, *_ = group
    outsider = await make_user()
    with pytest.raises(SenderNotMember):
        await MessageStore(session).append(chat.id, outsider.id, MessageType.TEXT, content="hi")


async def test_append_to_missing_chat(session, make_user):
    user = await make_user()
    with pytest.raises(ChatNotFound):
        await MessageStore(session).append(999, user.id, MessageType.TEXT, content="hi")


async def test_reply_must_be_in_same_chat(session, group, make_user):
    chat, owner, u2, _ = group
    store = MessageStore(session)
    other = await MembershipStore(session).get_or_create_private_chat(owner.id, u2.id)
    foreign = await store.append(other.id, owner.id, MessageType.TEXT, content="elsewhere")

    with pytest.raises(MessageChatMismatch):
        await store.append(chat.id, owner.id, MessageType.TEXT, content="re", reply_to_id=foreign.id)
    with pytest.raises(MessageNotFound):
        await store.append(chat.id, owner.id, MessageType.TEXT, content="re", reply_to_id=12345)

    first = await store.append(chat.id, u2.id, MessageType.TEXT, content="first")
    reply = await store.append(chat.id, owner.id, MessageType.TEXT, content="re", reply_to_id=first.id)
    assert reply.reply_to_id == first.id


async def test_edit_checks_sender_and_chat(session, group):
    chat, owner, u2, _ = group
    store = MessageStore(session)
    message = await store.append(chat.id, owner.id, MessageType.TEXT, content="hello")
    other = await MembershipStore(session).create_group_chat(owner.id, "other")

    with pytest.raises(AccessDenied):
        await store.edit(message.id, u2.id, "hacked", chat_id=chat.id)
    with pytest.raises(MessageChatMismatch):
        await store.edit(message.id, owner.id, "moved", chat_id=other.id)

    edited = await store.edit(message.id, owner.id, "hello!", chat_id=chat.id)
    assert edited.content == "hello!"
    assert edited.edited is True


async def test_soft_delete_is_all_or_nothing(session, group):
    chat, owner, u2, _ = group
    store = MessageStore(session)
    mine = await store.append(chat.id, owner.id, MessageType.TEXT, content="mine")
    theirs = await store.append(chat.id, u2.id, MessageType.TEXT, content="theirs")

    with pytest.raises(AccessDenied):
        await store.soft_delete([mine.id, theirs.id], owner.id, chat_id=chat.id)
    messages, total = await store.page(chat.id, 0, 10)
    assert total == 2

    await store.soft_delete([mine.id], owner.id, chat_id=chat.id)
    messages, total = await store.page(chat.id, 0, 10)
    assert [m.id for m in messages] == [theirs.id]
    assert (await store.latest(chat.id)).id == theirs.id


async def test_delete_unknown_message(session, group):
    chat, owner, *_ = group
    with pytest.raises(MessageNotFound):
        await MessageStore(session).soft_delete([4242], owner.id, chat_id=chat.id)


async def test_soft_delete_empty_batch(session, group):
    chat, owner, *_ = group
    assert await MessageStore(session).soft_delete([], owner.id, chat_id=chat.id) == []


async def test_page_is_chronological(session, group):
    chat, owner, u2, _ = group
    store = MessageStore(session)
    ids = [(await store.append(chat.id, owner.id, MessageType.TEXT, content=str(i))).id for i in range(5)]

    first, total = await store.page(chat.id, 0, 2)
    second, _ = await store.page(chat.id, 1, 2)
    assert total == 5
    assert [m.id for m in first + second] == ids[:4]
    assert (await store.latest(chat.id)).id == ids[-1]


async def test_latest_of_empty_chat(session, group):
    chat, *_ = group
    assert await MessageStore(session).latest(chat.id) is None


async def test_append_creates_one_unread_status_per_recipient(session, group):
    chat, owner, u2, u3 = group
    messages = MessageStore(session)
    unread = UnreadProjector(session)
    message = await messages.append(chat.id, owner.id, MessageType.TEXT, content="hi")

    recipients = await unread.on_append(message)
    assert sorted(recipients) == sorted([u2.id, u3.id])
    assert await unread.unread_count(u2.id, chat.id) == 1
    assert await unread.unread_count(u3.id, chat.id) == 1
    assert await unread.unread_count(owner.id, chat.id) == 0


async def test_mark_read_is_idempotent(session, group):
    chat, owner, u2, u3 = group
    messages = MessageStore(session)
    unread = UnreadProjector(session)
    m1 = await messages.append(chat.id, owner.id, MessageType.TEXT, content="1")
    await unread.on_append(m1)
    m2 = await messages.append(chat.id, owner.id, MessageType.TEXT, content="2")
    await unread.on_append(m2)

    assert await unread.pending_receipts(chat.id, u2.id, [m1.id]) == [(m1.id, owner.id)]
    assert await unread.mark_read(chat.id, u2.id, [m1.id]) == 1
    assert await unread.pending_receipts(chat.id, u2.id, [m1.id]) == []
    assert await unread.mark_read(chat.id, u2.id, [m1.id]) == 1
    assert await unread.mark_read(chat.id, u2.id, []) == 1
    assert await unread.mark_read(chat.id, u2.id, [m1.id, m2.id]) == 0
    assert await unread.unread_count(u3.id, chat.id) == 2


async def test_deleted_message_no_longer_counts_as_unread(session, group):
    chat, owner, u2, _ = group
    messages = MessageStore(session)
    unread = UnreadProjector(session)
    message = await messages.append(chat.id, owner.id, MessageType.TEXT, content="oops")
    await unread.on_append(message)

    await messages.soft_delete([message.id], owner.id, chat_id=chat.id)
    assert await unread.unread_count(u2.id, chat.id) == 0


async def test_chat_list_orders_by_activity(session, make_user):
    a, b, c = await make_user(first_name="Ann"), await make_user(first_name="Ben"), await make_user()
    membership = MembershipStore(session)
    messages = MessageStore(session, membership)
    unread = UnreadProjector(session, membership, messages)

    with_b = await membership.get_or_create_private_chat(a.id, b.id)
    with_c = await membership.get_or_create_private_chat(a.id, c.id)
    group = await membership.create_group_chat(a.id, "crew")
    message = await messages.append(with_b.id, b.id, MessageType.TEXT, content="ping")
    await unread.on_append(message)

    items, total = await unread.chat_list(a.id, 0, 10)
    assert total == 3
    assert items[0].chat_id == with_b.id
    assert items[0].chat_name == "Ben"
    assert items[0].unread_count == 1
    assert items[0].last_message.content == "ping"
    assert items[0].counterpart.id == b.id
    assert {i.chat_id for i in items[1:]} == {with_c.id, group.id}

    groups, total = await unread.chat_list(a.id, 0, 10, chat_type=group.chat_type)
    assert total == 1
    assert groups[0].chat_name == "crew"
    assert groups[0].counterpart is None
