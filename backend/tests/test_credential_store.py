from datetime import datetime, timedelta, timezone

import pytest

from reelcast.models import Platform
from reelcast.services.credential_store import CredentialStore, TokenSet
from reelcast.services.errors import CredentialNotFound


@pytest.fixture
def store(session_factory):
    return CredentialStore(session_factory)


async def test_upsert_then_get(store, make_user):
    user = await make_user()
    expires = datetime.now(timezone.utc) + timedelta(hours=1)

    await store.upsert(user.id, Platform.youtube, TokenSet("tok", "ref", expires, scope="s"))
    credential = await store.get(user.id, Platform.youtube)

    assert credential.access_token == "tok"
    assert credential.refresh_token == "ref"
    assert credential.scope == "s"


async def test_upsert_overwrites_existing_grant(store, make_user):
    user = await make_user()
    await store.upsert(user.id, Platform.tiktok, TokenSet("old", external_user_id="open-1"))
    await store.upsert(user.id, Platform.tiktok, TokenSet("new"))

    credentials = await store.list_by_user(user.id)
    assert len(credentials) == 1
    assert credentials[0].access_token == "new"
    # not overwritten when the new grant does not carry it
    assert credentials[0].external_user_id == "open-1"


async def test_get_missing_raises(store, make_user):
    user = await make_user()
    with pytest.raises(CredentialNotFound):
        await store.get(user.id, Platform.instagram)


async def test_delete_is_idempotent(store, make_user):
    user = await make_user()
    await store.upsert(user.id, Platform.youtube, TokenSet("tok"))

    await store.delete(user.id, Platform.youtube)
    await store.delete(user.id, Platform.youtube)

    with pytest.raises(CredentialNotFound):
        await store.get(user.id, Platform.youtube)


async def test_list_and_bundle_are_scoped_to_user(store, make_user):
    alice = await make_user()
    bob = await make_user()
    await store.upsert(alice.id, Platform.youtube, TokenSet("a-yt"))
    await store.upsert(alice.id, Platform.tiktok, TokenSet("a-tt"))
    await store.upsert(bob.id, Platform.youtube, TokenSet("b-yt"))

    assert [c.platform for c in await store.list_by_user(alice.id)] == ["tiktok", "youtube"]
    bundle = await store.bundle_for(alice.id, [Platform.youtube, Platform.instagram])
    assert list(bundle) == [Platform.youtube]
    assert bundle[Platform.youtube].access_token == "a-yt"
