"""
Unit tests for the Firebase store client and the watcher that turns store changes into entity events.
"""

import asyncio
import json
import logging

import pytest

from fakes import make_store_data
from services.chat_vector_sync.ChangeFeed import ChangeFeed
from services.chat_vector_sync.StoreWatcher import StoreWatcher
from shared.clients.store.models.StoreEvent import StoreEvent
from shared.exceptions import ClientRequestError, TransientStoreError
from shared.models.chat import EntityKind

MESSAGE_PATH = "/workspaces/ws1/channels/c1/messages/m1"


def sse(*events) -> str:
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events)


def store_data():
    return make_store_data(
        workspaces={"ws1": {"channels": {
            "c1": {"messages": {
                "m1": {"userId": "u1", "content": "edited text", "timestamp": 100},
                "m2": {"userId": "u2", "content": "hello", "timestamp": 50},
            }},
            "c2": {},
        }}},
        users={
            "u1": {"displayName": "Alice Cooper", "bio": "Trail runner", "workspaces": {"ws1": True}},
            "u2": {"displayName": "Bob", "workspaces": {"ws1": True}},
        },
    )


def run(stack, operation):
    async def scenario():
        await stack.boot()
        try:
            return await operation()
        finally:
            await stack.close()

    return asyncio.run(scenario())


@pytest.fixture
def watcher(stack, helper_config):
    stack.firebase.data = store_data()
    return StoreWatcher(helper_config=helper_config, store_client=stack.store_client, feed=ChangeFeed(helper_config))


class TestStoreClientFirebase:
    """Tests for reading the canonical store."""

    def test_ids_are_sorted_shallow_keys(self, stack):
        stack.firebase.data = store_data()

        async def operation():
            return (
                await stack.store_client.do_fetch_workspace_ids(),
                await stack.store_client.do_fetch_channel_ids("ws1"),
                await stack.store_client.do_fetch_user_ids(),
                await stack.store_client.do_fetch_user_workspace_ids("u2"),
            )

        assert run(stack, operation) == (["ws1"], ["c1", "c2"], ["u1", "u2"], ["ws1"])

    def test_missing_nodes(self, stack):
        async def operation():
            return (
                await stack.store_client.do_fetch_user_profile("nobody"),
                await stack.store_client.do_fetch_messages("ws1", "c9"),
                await stack.store_client.do_find_channel_workspace("c9"),
            )

        assert run(stack, operation) == (None, [], None)

    def test_profile_ignores_unknown_fields(self, stack):
        stack.firebase.data = store_data()

        profile = run(stack, lambda: stack.store_client.do_fetch_user_profile("u1"))

        assert profile.display_name == "Alice Cooper"
        assert profile.bio == "Trail runner"

    def test_user_messages_are_newest_first(self, stack):
        stack.firebase.data = store_data()
        stack.firebase.data["workspaces"]["ws1"]["channels"]["c2"] = {"messages": {
            "m3": {"userId": "u1", "content": "newer", "timestamp": 500},
        }}

        messages = run(stack, lambda: stack.store_client.do_fetch_user_messages("u1", limit=5))

        assert [message.id for message in messages] == ["m3", "m1"]

    def test_stream_yields_data_events(self, stack):
        stack.firebase.streams["users"] = sse(
            ("put", {"path": "/", "data": {"u1": {"displayName": "Alice"}}}),
            ("keep-alive", None),
            ("patch", {"path": "/u1", "data": {"displayName": "Alice Cooper"}}),
            ("cancel", None),
            ("put", {"path": "/u2", "data": {"displayName": "never seen"}}),
        )

        async def operation():
            return [event async for event in stack.store_client.do_stream("users")]

        events = run(stack, operation)

        assert [(event.event, event.path) for event in events] == [("put", "/users"), ("patch", "/users/u1")]
        assert events[1].data == {"displayName": "Alice Cooper"}

    def test_malformed_frames_are_skipped(self, stack):
        stack.firebase.streams["users"] = (
            "event: put\ndata: {not json\n\n"
            "event: put\ndata: [1, 2]\n\n"
            + sse(("put", {"path": "/u1", "data": {"displayName": "Alice"}}))
        )

        async def operation():
            return [event async for event in stack.store_client.do_stream("users")]

        events = run(stack, operation)

        assert [(event.event, event.path) for event in events] == [("put", "/users/u1")]

    def test_refused_stream_is_transient(self, stack):
        stack.firebase.stream_status = 401

        async def operation():
            return [event async for event in stack.store_client.do_stream("users")]

        with pytest.raises(TransientStoreError):
            run(stack, operation)


class TestTranslate:
    """Tests for mapping store events to entity events."""

    def test_new_message(self, stack, watcher):
        events = run(stack, lambda: watcher.translate(StoreEvent(
            event="put", path=MESSAGE_PATH, data={"userId": "u1", "content": "hi", "timestamp": 7},
        )))

        assert len(events) == 1
        assert events[0].kind == EntityKind.MESSAGE_CREATED
        assert (events[0].message.id, events[0].message.workspace_id, events[0].message.channel_id) == ("m1", "ws1", "c1")

    def test_removed_message(self, stack, watcher):
        events = run(stack, lambda: watcher.translate(StoreEvent(event="put", path=MESSAGE_PATH, data=None)))

        assert [event.kind for event in events] == [EntityKind.MESSAGE_DELETED]

    def test_thread_message(self, stack, watcher):
        events = run(stack, lambda: watcher.translate(StoreEvent(
            event="put",
            path="/workspaces/ws1/channels/c1/threads/t1/messages/m9",
            data={"userId": "u1", "content": "in a thread"},
        )))

        assert events[0].message.thread_id == "t1"
        assert events[0].message.channel_id == "c1"

    def test_non_text_message_is_ignored(self, stack, watcher):
        events = run(stack, lambda: watcher.translate(StoreEvent(
            event="put", path=MESSAGE_PATH, data={"userId": "u1", "content": "x.png", "type": "image"},
        )))

        assert events == []

    def test_field_change_reads_the_whole_message(self, stack, watcher):
        events = run(stack, lambda: watcher.translate(StoreEvent(
            event="put", path=f"{MESSAGE_PATH}/content", data="edited text",
        )))

        assert events[0].kind == EntityKind.MESSAGE_UPDATED
        assert events[0].message.content == "edited text"
        assert events[0].message.user_id == "u1"

    def test_patch_on_messages_node(self, stack, watcher):
        events = run(stack, lambda: watcher.translate(StoreEvent(
            event="patch",
            path="/workspaces/ws1/channels/c1/messages",
            data={"m5": {"userId": "u2", "content": "new one"}, "m2": None},
        )))

        assert sorted((event.kind, event.message.id) for event in events) == [
            (EntityKind.MESSAGE_CREATED, "m5"),
            (EntityKind.MESSAGE_DELETED, "m2"),
        ]

    def test_profile_change_carries_previous_display_name(self, stack, watcher):
        watcher._seed_display_names({"u1": {"displayName": "Alice"}})

        events = run(stack, lambda: watcher.translate(StoreEvent(
            event="put", path="/users/u1/displayName", data="Alice Cooper",
        )))

        assert events[0].kind == EntityKind.PROFILE_CHANGED
        assert events[0].user_id == "u1"
        assert events[0].profile.display_name == "Alice Cooper"
        assert events[0].previous_display_name == "Alice"

    def test_unchanged_display_name_gives_no_previous_name(self, stack, watcher):
        watcher._seed_display_names({"u2": {"displayName": "Bob"}})

        events = run(stack, lambda: watcher.translate(StoreEvent(
            event="put", path="/users/u2", data={"displayName": "Bob", "photoURL": "https://img/b.png"},
        )))

        assert events[0].profile.photo_url == "https://img/b.png"
        assert events[0].previous_display_name is None

    def test_membership_change_is_ignored(self, stack, watcher):
        events = run(stack, lambda: watcher.translate(StoreEvent(
            event="put", path="/users/u1/workspaces/ws2", data=True,
        )))

        assert events == []


class TestWatcherRun:
    """Tests for following the stream end to end."""

    def test_publishes_profile_changes_until_stopped(self, stack, helper_config):
        stack.firebase.data = store_data()
        stack.firebase.streams["users"] = sse(
            ("put", {"path": "/", "data": {"u1": {"displayName": "Alice"}}}),
            ("patch", {"path": "/u1", "data": {"displayName": "Alice Cooper"}}),
        )
        feed = ChangeFeed(helper_config)
        watcher = StoreWatcher(helper_config=helper_config, store_client=stack.store_client, feed=feed)
        received = []

        async def on_profile(event):
            received.append(event)
            watcher.stop()

        feed.on_entity_changed(EntityKind.PROFILE_CHANGED, on_profile)

        run(stack, lambda: asyncio.wait_for(watcher.do_run(), timeout=5))

        assert len(received) == 1
        assert received[0].previous_display_name == "Alice"
        assert received[0].profile.display_name == "Alice Cooper"

    def test_failing_event_does_not_stop_the_watcher(self, stack, helper_config):
        stack.firebase.data = store_data()
        stack.firebase.fail_paths["users/u1"] = 401
        stack.firebase.streams["users"] = sse(
            ("put", {"path": "/", "data": {"u1": {"displayName": "Alice"}, "u2": {"displayName": "Bob"}}}),
            ("put", {"path": "/u1/displayName", "data": "Alice Cooper"}),
            ("patch", {"path": "/u2", "data": {"displayName": "Bobby"}}),
        )
        feed = ChangeFeed(helper_config)
        watcher = StoreWatcher(helper_config=helper_config, store_client=stack.store_client, feed=feed)
        received = []

        async def on_profile(event):
            received.append(event)
            watcher.stop()

        feed.on_entity_changed(EntityKind.PROFILE_CHANGED, on_profile)

        run(stack, lambda: asyncio.wait_for(watcher.do_run(), timeout=5))

        assert [event.user_id for event in received] == ["u2"]
        assert received[0].previous_display_name == "Bob"

    def test_exit_of_the_watcher_task_is_logged(self, stack, helper_config, caplog):
        watcher = StoreWatcher(helper_config=helper_config, store_client=stack.store_client, feed=ChangeFeed(helper_config))

        async def dying():
            raise ClientRequestError("stream rejected", status_code=401)

        async def operation():
            task = asyncio.create_task(dying())
            await asyncio.wait([task])
            watcher.log_exit(task)

        with caplog.at_level(logging.ERROR, logger="chat_vector_sync.tests"):
            asyncio.run(operation())

        assert "Store watcher stopped unexpectedly" in caplog.text
        assert "stream rejected" in caplog.text

    def test_cancelled_watcher_task_is_not_an_error(self, stack, helper_config, caplog):
        watcher = StoreWatcher(helper_config=helper_config, store_client=stack.store_client, feed=ChangeFeed(helper_config))

        async def operation():
            task = asyncio.create_task(asyncio.sleep(10))
            await asyncio.sleep(0)
            task.cancel()
            await asyncio.wait([task])
            watcher.log_exit(task)

        with caplog.at_level(logging.ERROR, logger="chat_vector_sync.tests"):
            asyncio.run(operation())

        assert "Store watcher stopped unexpectedly" not in caplog.text
