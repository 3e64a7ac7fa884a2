import pytest

from app.relay.readiness import is_ready, ready_for_processing
from helpers import at


class TestReadyForProcessing:

    @pytest.mark.asyncio
    async def test_empty_table_is_a_valid_result(self, db):
        assert await ready_for_processing(3, 100, at(0)) == []

    @pytest.mark.asyncio
    async def test_only_pending_messages_are_selected(self, make_message):
        pending = await make_message(1)
        retried = await make_message(2, retry_count=2)
        not_yet_expired = await make_message(3, expires_at=at(60))
        await make_message(4, processed_at=at(-1), topic_name="orders")
        await make_message(5, is_ignored=True)
        await make_message(6, expires_at=at(-60))
        await make_message(7, expires_at=at(0))
        await make_message(8, retry_count=3)

        selected = await ready_for_processing(3, 100, at(0))

        assert [m.id for m in selected] == [pending.id, retried.id, not_yet_expired.id]

    @pytest.mark.asyncio
    async def test_oldest_first_and_limited(self, make_message):
        third = await make_message(30)
        first = await make_message(10)
        second = await make_message(20)

        selected = await ready_for_processing(3, 2, at(0))

        assert [m.id for m in selected] == [first.id, second.id]
        assert third.id not in [m.id for m in selected]

    @pytest.mark.asyncio
    async def test_ignored_never_selected_for_any_now(self, make_message):
        await make_message(1, is_ignored=True, retry_count=0)

        for seconds in (-86400, 0, 86400 * 365):
            assert await ready_for_processing(100, 100, at(seconds)) == []

    @pytest.mark.asyncio
    async def test_in_memory_predicate_agrees_with_query(self, make_message):
        messages = [
            await make_message(1),
            await make_message(2, retry_count=3),
            await make_message(3, expires_at=at(-1)),
            await make_message(4, expires_at=at(1)),
            await make_message(5, is_ignored=True),
            await make_message(6, processed_at=at(-1), topic_name="orders"),
            await make_message(7, retry_count=1, next_retry_at=at(5)),
            await make_message(8, retry_count=1, next_retry_at=at(0)),
        ]

        selected = {m.id for m in await ready_for_processing(3, 100, at(0))}

        for message in messages:
            assert is_ready(message, max_retries=3, now=at(0)) == (message.id in selected)


class TestBackoff:

    @pytest.mark.asyncio
    async def test_backoff_does_not_crowd_out_other_keys(self, make_message):
        await make_message(1, partition_key="a", retry_count=1, next_retry_at=at(60))
        ready = await make_message(2, partition_key="b")

        selected = await ready_for_processing(3, 1, at(1))

        assert [m.id for m in selected] == [ready.id]

    @pytest.mark.asyncio
    async def test_key_waits_behind_its_message_in_backoff(self, make_message):
        older = await make_message(1, partition_key="a")
        await make_message(2, partition_key="a", retry_count=1, next_retry_at=at(60))
        await make_message(3, partition_key="a")
        loose = await make_message(4, retry_count=1, next_retry_at=at(60))
        other = await make_message(5, partition_key="b")

        selected = await ready_for_processing(3, 100, at(1))

        assert [m.id for m in selected] == [older.id, other.id]
        assert loose.id not in {m.id for m in selected}

        after_backoff = await ready_for_processing(3, 100, at(60))
        assert len(after_backoff) == 5

    @pytest.mark.asyncio
    async def test_offset_pages_through_the_ready_set(self, make_message):
        messages = [await make_message(seq) for seq in range(1, 6)]

        first_page = await ready_for_processing(3, 2, at(0))
        second_page = await ready_for_processing(3, 2, at(0), offset=2)

        assert [m.id for m in first_page + second_page] == [m.id for m in messages[:4]]
