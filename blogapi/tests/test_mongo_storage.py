"""Tests for the document-store backend: query builders plus a mocked driver."""

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure

from blogapi.config import Settings
from blogapi.models.post import InsertPost, UpdatePost
from blogapi.models.subscriber import InsertSubscriber
from blogapi.services.storage.errors import ConflictError, StorageUnavailable
from blogapi.services.storage.mongo import (
    MongoStorage,
    mongo_filter,
    search_pipeline,
    to_document,
)
from blogapi.services.storage.posts import PostFilter
from blogapi.services.storage.supervisor import HealthSupervisor, StorageState

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def post_doc(post_id: int, **overrides) -> dict:
    doc = {
        "id": post_id,
        "title": f"Post {post_id}",
        "slug": f"post-{post_id}",
        "excerpt": "Excerpt",
        "content": "Content",
        "category": "Tech News",
        "status": "published",
        "createdAt": NOW,
        "updatedAt": NOW,
        "publishedAt": NOW,
    }
    doc.update(overrides)
    return doc


class FakeDatabase:
    """Stand-in for a pymongo Database: one MagicMock per collection."""

    def __init__(self) -> None:
        self.collections: dict[str, MagicMock] = defaultdict(MagicMock)
        self.name = "blog"
        self._seq: dict[str, int] = defaultdict(int)
        counters = self.collections["counters"]
        counters.find_one_and_update.side_effect = self._next_seq
        users = self.collections["users"]
        users.find_one.return_value = None

    def _next_seq(self, query, update, **kwargs):
        self._seq[query["_id"]] += 1
        return {"_id": query["_id"], "seq": self._seq[query["_id"]]}

    def __getitem__(self, name: str) -> MagicMock:
        return self.collections[name]


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
async def mongo_storage(fake_db):
    client = MagicMock()
    client.get_default_database.return_value = fake_db
    factory = MagicMock(return_value=client)
    storage = MongoStorage(
        "mongodb://db.invalid:27017/blog",
        admin_username="admin",
        admin_password="admin123",
        client_factory=factory,
    )
    await storage.connect()
    storage.test_client_factory = factory
    return storage


def test_to_document_uses_camel_case():
    assert to_document({"published_at": NOW, "author_id": 1, "title": "x"}) == {
        "publishedAt": NOW,
        "authorId": 1,
        "title": "x",
    }


def test_mongo_filter_builds_equality_and_escaped_regex():
    assert mongo_filter(PostFilter()) == {}
    query = mongo_filter(PostFilter(status="published", category="Tech News", query="c++"))
    assert query["status"] == "published"
    assert query["category"] == "Tech News"
    assert query["$or"] == [
        {"title": {"$regex": r"c\+\+", "$options": "i"}},
        {"excerpt": {"$regex": r"c\+\+", "$options": "i"}},
        {"content": {"$regex": r"c\+\+", "$options": "i"}},
    ]


def test_search_pipeline_ranks_title_then_date_and_paginates():
    pipeline = search_pipeline(PostFilter(status="published", query="ai"), limit=5, offset=10)
    stages = [next(iter(stage)) for stage in pipeline]
    assert stages == ["$match", "$addFields", "$sort", "$skip", "$limit", "$project"]
    assert pipeline[0]["$match"] == mongo_filter(PostFilter(status="published", query="ai"))
    assert list(pipeline[2]["$sort"]) == ["_titleMatch", "publishedAt", "createdAt", "id"]
    assert pipeline[3] == {"$skip": 10}
    assert pipeline[4] == {"$limit": 5}


def test_search_pipeline_without_limit():
    pipeline = search_pipeline(PostFilter(query="ai"), limit=None, offset=None)
    assert {"$skip": 0} in pipeline
    assert not any("$limit" in stage for stage in pipeline)


async def test_connect_creates_client_indexes_and_admin(mongo_storage, fake_db):
    factory = mongo_storage.test_client_factory
    _, kwargs = factory.call_args
    assert kwargs["serverSelectionTimeoutMS"] == 5000
    assert kwargs["tz_aware"] is True
    assert mongo_storage.is_ready()

    unique_indexes = [
        c.args[0]
        for c in fake_db["posts"].create_index.call_args_list
        if c.kwargs.get("unique")
    ]
    assert "slug" in unique_indexes
    inserted_admin = fake_db["users"].insert_one.call_args.args[0]
    assert inserted_admin["username"] == "admin"
    assert inserted_admin["isAdmin"] is True
    assert inserted_admin["displayName"] == "Administrator"


async def test_connect_is_bootstrapped_once(mongo_storage, fake_db):
    await mongo_storage.connect()
    assert fake_db["users"].insert_one.call_count == 1
    assert mongo_storage.test_client_factory.call_count == 1


async def test_create_post_retries_slug_after_duplicate_key(mongo_storage, fake_db):
    posts = fake_db["posts"]
    posts.count_documents.return_value = 0
    posts.insert_one.side_effect = [DuplicateKeyError("E11000 duplicate key"), None]

    post = await mongo_storage.create_post(
        InsertPost(title="Hello World", excerpt="E", content="C", category="Tech News", publish_now=True)
    )

    assert posts.insert_one.call_count == 2
    assert post.slug == "hello-world"
    assert post.status == "published"
    assert post.published_at is not None
    doc = posts.insert_one.call_args.args[0]
    assert doc["publishedAt"] == post.published_at
    assert "publish_now" not in doc and "publishNow" not in doc


async def test_create_post_uses_suffix_when_slug_exists(mongo_storage, fake_db):
    taken = {"hello-world", "hello-world-1"}
    fake_db["posts"].count_documents.side_effect = (
        lambda query, limit=None: int(query["slug"] in taken)
    )

    post = await mongo_storage.create_post(
        InsertPost(title="Hello World", excerpt="E", content="C", category="Tech News")
    )

    assert post.slug == "hello-world-2"


async def test_update_post_excludes_self_from_slug_check(mongo_storage, fake_db):
    posts = fake_db["posts"]
    posts.find_one.return_value = post_doc(7, title="Old", slug="old")
    posts.count_documents.return_value = 0
    posts.find_one_and_update.return_value = post_doc(7, title="New", slug="new")

    updated = await mongo_storage.update_post(7, UpdatePost(title="New"))

    assert updated.slug == "new"
    slug_query = posts.count_documents.call_args.args[0]
    assert slug_query == {"slug": "new", "id": {"$ne": 7}}
    _, update = posts.find_one_and_update.call_args.args
    assert update["$set"]["title"] == "New"
    assert update["$set"]["slug"] == "new"


async def test_get_post_count_uses_same_filter(mongo_storage, fake_db):
    fake_db["posts"].count_documents.return_value = 3
    assert await mongo_storage.get_post_count(status="published", category="Tech News") == 3
    fake_db["posts"].count_documents.assert_called_with(
        mongo_filter(PostFilter(status="published", category="Tech News"))
    )


async def test_duplicate_subscriber_is_conflict(mongo_storage, fake_db):
    fake_db["subscribers"].insert_one.side_effect = DuplicateKeyError("E11000")
    with pytest.raises(ConflictError) as exc_info:
        await mongo_storage.create_subscriber(InsertSubscriber(email="a@x.com"))
    assert exc_info.value.field == "email"


async def test_connection_failure_becomes_unavailable(mongo_storage, fake_db):
    fake_db["posts"].find_one.side_effect = AutoReconnect("connection reset")
    with pytest.raises(StorageUnavailable):
        await mongo_storage.get_post(1)
    assert mongo_storage.is_ready() is False


async def test_other_driver_errors_become_unavailable(mongo_storage, fake_db):
    fake_db["subscribers"].find_one.side_effect = OperationFailure("boom")
    with pytest.raises(StorageUnavailable):
        await mongo_storage.get_subscriber(1)


def topology_event(writable: bool) -> MagicMock:
    event = MagicMock()
    event.new_description.has_writable_server.return_value = writable
    return event


def topology_listener(storage: MongoStorage):
    _, kwargs = storage.test_client_factory.call_args
    return kwargs["event_listeners"][0]


async def test_topology_change_is_delivered_on_loop(mongo_storage):
    seen = []
    mongo_storage.on_connection_change = seen.append
    listener = topology_listener(mongo_storage)

    listener.description_changed(topology_event(True))  # no change, already ready
    listener.description_changed(topology_event(False))
    await asyncio.sleep(0)

    assert seen == [False]
    assert mongo_storage.is_ready() is False


async def test_one_member_down_keeps_primary_active(mongo_storage):
    supervisor = HealthSupervisor(
        Settings(_env_file=None, storage_url="mongodb://a.invalid,b.invalid/blog"),
        backend_factory=lambda kind, s: mongo_storage,
    )
    await supervisor.start()
    listener = topology_listener(mongo_storage)

    # Member b stops answering while a still accepts writes
    listener.description_changed(topology_event(True))
    await asyncio.sleep(0)
    assert supervisor.state is StorageState.PRIMARY
    assert supervisor.current_backend() is mongo_storage

    # Both members gone: nothing writable remains
    listener.description_changed(topology_event(False))
    await asyncio.sleep(0)
    assert supervisor.state is StorageState.MEMORY


async def test_not_connected_raises_unavailable():
    storage = MongoStorage("mongodb://db.invalid:27017/blog")
    with pytest.raises(StorageUnavailable):
        await storage.get_post(1)
    with pytest.raises(StorageUnavailable):
        await storage.sessions.get("sid")
