import asyncio
import uuid
from datetime import timedelta

import aiosqlite
import pytest

from upload_tokens.storage.cleanup import SampledCleanup
from upload_tokens.storage.sqlite import SQLiteTokenStore


async def fetch_tokens(db_path):
    async with aiosqlite.connect(db_path) as conn:
        async with conn.execute(
            "SELECT id, image_id, used, uploaded_at FROM tokens ORDER BY id"
        ) as cursor:
            return await cursor.fetchall()


async def test_token_lifecycle(store):
    token = await store.create_token("img1", "t-1")
    assert token == "t-1"

    assert await store.consume_token(token, "img1") is True
    assert await store.consume_token(token, "img1") is False
    assert await store.mark_upload_as_completed(token, "img1") is True


async def test_issue_token_generates_uuid(store):
    token = await store.issue_token("img1")

    assert token is not None
    assert str(uuid.UUID(token)) == token
    assert await store.consume_token(token, "img1") is True


async def test_second_pending_token_for_same_image_is_refused(store):
    assert await store.create_token("img1", "t-1") == "t-1"
    assert await store.create_token("img1", "t-2") is None
    assert await store.issue_token("img1") is None

    # Other images are independent
    assert await store.create_token("img2", "t-3") == "t-3"


async def test_new_token_allowed_after_consumption(store):
    await store.create_token("img1", "t-1")
    assert await store.consume_token("t-1", "img1")

    assert await store.create_token("img1", "t-2") == "t-2"


async def test_new_token_allowed_after_expiry(store, clock, db_path):
    await store.create_token("img1", "t-1")
    clock.advance(minutes=16)

    assert await store.create_token("img1", "t-2") == "t-2"
    assert [row[0] for row in await fetch_tokens(db_path)] == ["t-2"]


async def test_consume_rejects_expired_token(store, clock):
    await store.create_token("img1", "t-1")
    clock.advance(minutes=15, seconds=1)

    assert await store.consume_token("t-1", "img1") is False


async def test_consume_accepts_token_until_ttl_ends(store, clock):
    await store.create_token("img1", "t-1")
    clock.advance(minutes=15)

    assert await store.consume_token("t-1", "img1") is True


async def test_consume_rejects_unknown_token_and_wrong_image(store):
    await store.create_token("img1", "t-1")

    assert await store.consume_token("nope", "img1") is False
    assert await store.consume_token("t-1", "img2") is False
    # Failed attempts do not use up the token
    assert await store.consume_token("t-1", "img1") is True


async def test_mark_completed_requires_consumed_token(store):
    await store.create_token("img1", "t-1")

    assert await store.mark_upload_as_completed("t-1", "img1") is False
    assert await store.consume_token("t-1", "img1")
    assert await store.mark_upload_as_completed("t-1", "img2") is False
    assert await store.mark_upload_as_completed("t-1", "img1") is True


async def test_mark_completed_rejects_expired_token(store, clock):
    await store.create_token("img1", "t-1")
    await store.consume_token("t-1", "img1")
    clock.advance(minutes=20)

    assert await store.mark_upload_as_completed("t-1", "img1") is False


async def test_delete_token_for_image_id_removes_only_incomplete_uploads(store, db_path):
    await store.create_token("img1", "t-1")
    await store.consume_token("t-1", "img1")
    await store.create_token("img1", "t-2")
    await store.consume_token("t-2", "img1")
    await store.mark_upload_as_completed("t-2", "img1")
    await store.create_token("img1", "t-3")
    await store.create_token("img2", "t-4")
    await store.consume_token("t-4", "img2")

    await store.delete_token_for_image_id("img1")

    assert [row[0] for row in await fetch_tokens(db_path)] == ["t-2", "t-3", "t-4"]


async def test_concurrent_creation_for_same_image_has_one_winner(store):
    results = await asyncio.gather(
        *(store.create_token("img1", f"t-{i}") for i in range(5))
    )

    assert len([r for r in results if r is not None]) == 1


async def test_custom_ttl(db_path, clock):
    store = SQLiteTokenStore(
        db_path, token_ttl=timedelta(minutes=1), cleanup=SampledCleanup(0.0), clock=clock
    )
    async with store:
        await store.migrate()
        await store.create_token("img1", "t-1")
        clock.advance(minutes=2)
        assert await store.consume_token("t-1", "img1") is False


async def test_faults_return_neutral_values(store):
    await store.close()

    assert await store.create_token("img1", "t-1") is None
    assert await store.consume_token("t-1", "img1") is False
    assert await store.mark_upload_as_completed("t-1", "img1") is False
    await store.delete_token_for_image_id("img1")
    assert await store.cleanup_tokens() == 0
    assert await store.is_db_alive() is False


async def test_conflict_is_logged_as_warning(store, caplog):
    await store.create_token("img1", "t-1")

    with caplog.at_level("WARNING", logger="upload_tokens.storage.sqlite"):
        assert await store.create_token("img1", "t-2") is None

    assert "img1" in caplog.text
    assert "UNIQUE" not in caplog.text


@pytest.mark.parametrize("probability, expected_runs", [(0.0, 0), (1.0, 3)])
async def test_cleanup_sampling_on_create(db_path, clock, monkeypatch, probability, expected_runs):
    store = SQLiteTokenStore(db_path, cleanup=SampledCleanup(probability), clock=clock)
    calls = []

    async def fake_cleanup():
        calls.append(1)
        return 0

    async with store:
        await store.migrate()
        monkeypatch.setattr(store, "cleanup_tokens", fake_cleanup)
        await store.create_token("img1", "t-1")
        await store.create_token("img1", "t-2")
        await store.create_token("img2", "t-3")

    assert len(calls) == expected_runs


async def test_cleanup_failure_does_not_fail_token_creation(db_path, clock, monkeypatch, caplog):
    from upload_tokens.storage.sqlite import DELETE_OLD_TOKENS

    store = SQLiteTokenStore(db_path, cleanup=SampledCleanup(1.0), clock=clock)
    async with store:
        await store.migrate()
        write = store._write

        async def failing_cleanup_write(*statements):
            if statements[0][0] == DELETE_OLD_TOKENS:
                raise aiosqlite.OperationalError("disk I/O error")
            return await write(*statements)

        monkeypatch.setattr(store, "_write", failing_cleanup_write)
        with caplog.at_level("ERROR", logger="upload_tokens.storage.sqlite"):
            assert await store.create_token("img1", "t-1") == "t-1"

        assert [row[0] for row in await fetch_tokens(db_path)] == ["t-1"]

    assert "when cleaning up tokens" in caplog.text
