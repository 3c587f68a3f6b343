from __future__ import annotations

import io
import json
import sys

import pytest

from oae_messaging.messaging import PROP_SAKAI_FROM, PROP_SAKAI_PREVIOUS_MESSAGE, PROP_SAKAI_TO
from oae_messaging.personal import ProfileResolutionFailure
from oae_messaging.serializer import (
    CycleDetected,
    JSONTreeBuilder,
    JSONWriter,
    JSONWriterError,
    SerializationError,
)
from oae_messaging.store import MemorySession


def _writer() -> tuple[JSONWriter, io.StringIO]:
    buffer = io.StringIO()
    return JSONWriter(buffer), buffer


def test_json_writer_streams_nested_structures():
    writer, buffer = _writer()
    writer.object()
    writer.key("a").value("1")
    writer.key("b").array().value("x").value("y").end_array()
    writer.key("c").object().end_object()
    writer.key("d").array().object().key("e").value(True).end_object().end_array()
    writer.end_object()
    assert buffer.getvalue() == '{"a":"1","b":["x","y"],"c":{},"d":[{"e":true}]}'
    assert writer.done


@pytest.mark.parametrize("sink", [lambda: JSONWriter(io.StringIO()), JSONTreeBuilder])
@pytest.mark.parametrize(
    "misuse",
    [
        lambda w: w.object().value("no key"),
        lambda w: w.key("top"),
        lambda w: w.object().end_array(),
        lambda w: w.array().key("k"),
        lambda w: w.object().key("k").end_object(),
        lambda w: w.value("done").value("again"),
        lambda w: w.end_object(),
    ],
)
def test_json_sinks_reject_misuse(sink, misuse):
    with pytest.raises(JSONWriterError):
        misuse(sink())


def _seed_profiles(profiles, session):
    profiles.save(session, "alice", {"firstName": "Alice", "email": "alice@example.com"})
    profiles.save(session, "bob", {"firstName": "Bob", "tags": ["staff", "admin"]})


def test_serialize_plain_message(processor, messaging, profiles, session, layout):
    _seed_profiles(profiles, session)
    node = messaging.create(
        session,
        {PROP_SAKAI_TO: "bob", "sakai:subject": "Hi", "sakai:read": False, "count": 3, "labels": ["a", "b"]},
        "m1",
    )
    result = processor.serialize(session, node)

    own = set(node.properties)
    assert set(result) == own | {"id", "path", "userTo", "userFrom"}
    assert result["id"] == "m1"
    assert result["path"] == layout.message_url("m1")
    assert result["sakai:read"] == "false"
    assert result["count"] == "3"
    assert result["labels"] == ["a", "b"]
    assert result[PROP_SAKAI_TO] == "bob"
    assert result["userTo"]["firstName"] == "Bob"
    assert result["userTo"]["tags"] == ["staff", "admin"]
    assert result["userFrom"]["email"] == "alice@example.com"
    assert PROP_SAKAI_PREVIOUS_MESSAGE not in result


def test_serialize_by_path(processor, messaging, session, layout):
    messaging.create(session, {}, "m1")
    result = processor.serialize(session, layout.message_path("alice", "m1"))
    assert result["id"] == "m1"


def test_missing_primary_node_is_serialization_error(processor, session, layout):
    with pytest.raises(SerializationError) as excinfo:
        processor.serialize(session, layout.message_path("alice", "ghost"))
    assert excinfo.value.path == layout.message_path("alice", "ghost")


def test_missing_profile_does_not_abort(processor, messaging, profiles, session):
    profiles.save(session, "alice", {"firstName": "Alice"})
    node = messaging.create(session, {PROP_SAKAI_TO: "nobody", "sakai:subject": "Lost"}, "m1")
    result = processor.serialize(session, node)
    assert "userTo" not in result
    assert result["userFrom"]["firstName"] == "Alice"
    assert result["sakai:subject"] == "Lost"
    assert result[PROP_SAKAI_TO] == "nobody"


def test_resolve_user_returns_explicit_failure(processor, messaging, session):
    node = messaging.create(session, {PROP_SAKAI_TO: ""}, "m1")
    missing = processor.resolve_user(session, node, PROP_SAKAI_FROM, "userFrom")
    assert not missing.ok
    assert isinstance(missing.failure, ProfileResolutionFailure)
    assert missing.username == "alice"
    invalid = processor.resolve_user(session, node, PROP_SAKAI_TO, "userTo")
    assert not invalid.ok
    assert invalid.failure is not None


def _chain(messaging, session, length: int) -> list:
    nodes = []
    previous = None
    for n in range(length):
        props = {PROP_SAKAI_TO: "bob", "sakai:subject": f"msg {n}"}
        if previous is not None:
            props = messaging.reply_properties(previous, props)
        node = messaging.create(session, props, f"m{n}")
        nodes.append(node)
        previous = node.name
    return nodes


@pytest.mark.parametrize("length", [1, 2, 5])
def test_previous_message_chain_is_nested(processor, messaging, session, length):
    nodes = _chain(messaging, session, length)
    result = processor.serialize(session, nodes[-1])
    depth = 0
    current = result
    while PROP_SAKAI_PREVIOUS_MESSAGE in current:
        current = current[PROP_SAKAI_PREVIOUS_MESSAGE]
        assert isinstance(current, dict)
        depth += 1
    assert depth == length - 1
    assert current["id"] == "m0"
    assert result["id"] == f"m{length - 1}"


def test_previous_message_by_bare_id(processor, messaging, session):
    messaging.create(session, {"sakai:subject": "first"}, "first")
    reply = messaging.create(session, {PROP_SAKAI_PREVIOUS_MESSAGE: "first"}, "second")
    result = processor.serialize(session, reply)
    assert result[PROP_SAKAI_PREVIOUS_MESSAGE]["sakai:subject"] == "first"


def test_previous_message_property_name_is_case_insensitive(processor, messaging, layout, session):
    messaging.create(session, {}, "first")
    reply = messaging.create(session, {"Sakai:PreviousMessage": layout.relative_message_path("first")}, "second")
    result = processor.serialize(session, reply)
    assert result[PROP_SAKAI_PREVIOUS_MESSAGE]["id"] == "first"
    assert "Sakai:PreviousMessage" not in result


def test_cycle_is_detected(processor, messaging, session):
    messaging.create(session, messaging.reply_properties("b", {}), "a")
    node_b = messaging.create(session, messaging.reply_properties("a", {}), "b")
    with pytest.raises(CycleDetected) as excinfo:
        processor.serialize(session, node_b)
    assert excinfo.value.path == node_b.path
    assert len(excinfo.value.chain) == 2


def test_self_reference_is_a_cycle(processor, messaging, session):
    node = messaging.create(session, messaging.reply_properties("loop", {}), "loop")
    with pytest.raises(CycleDetected):
        processor.serialize(session, node)


def test_missing_previous_message_is_fatal(processor, messaging, session):
    node = messaging.create(session, messaging.reply_properties("gone", {}), "m1")
    with pytest.raises(SerializationError) as excinfo:
        processor.serialize(session, node)
    assert not isinstance(excinfo.value, CycleDetected)
    assert excinfo.value.path == node.path


def test_previous_link_outside_message_store_is_fatal(processor, session):
    node = session.save_node("/content/loose/m1", {PROP_SAKAI_PREVIOUS_MESSAGE: "m0"})
    with pytest.raises(SerializationError):
        processor.serialize(session, node)


def test_write_node_streams_into_existing_document(processor, messaging, session):
    messaging.create(session, {}, "m1")
    writer, buffer = _writer()
    writer.array()
    processor.write_node(writer, session, session.get_node(messaging.layout.message_path("alice", "m1")))
    writer.end_array()
    payload = json.loads(buffer.getvalue())
    assert payload[0]["id"] == "m1"


def test_chain_within_each_mailbox(processor, messaging, layout):
    alice = MemorySession(user_id="alice")
    messaging.send(alice, {PROP_SAKAI_TO: "bob", "sakai:subject": "Plan"}, "m1")
    bob = MemorySession(user_id="bob", nodes={
        n.path: n.raw_properties() for n in alice.find_nodes("/")
    })
    messaging.send(bob, messaging.reply_properties("m1", {PROP_SAKAI_TO: "alice"}), "m2")
    result = processor.serialize(bob, layout.message_path("bob", "m2"))
    assert result[PROP_SAKAI_PREVIOUS_MESSAGE]["sakai:messagebox"] == "inbox"
    mirrored = processor.serialize(bob, layout.message_path("alice", "m2"))
    assert mirrored[PROP_SAKAI_PREVIOUS_MESSAGE]["sakai:messagebox"] == "outbox"


def test_tree_builder_matches_streamed_text(processor, messaging, profiles, session):
    _seed_profiles(profiles, session)
    nodes = _chain(messaging, session, 3)
    writer, buffer = _writer()
    processor.write_node(writer, session, nodes[-1])
    assert processor.serialize(session, nodes[-1]) == json.loads(buffer.getvalue())


def test_tree_builder_result_requires_complete_document():
    builder = JSONTreeBuilder().object().key("a")
    with pytest.raises(JSONWriterError):
        builder.result


def test_chain_longer_than_recursion_limit(processor, messaging, session):
    length = sys.getrecursionlimit() + 200
    nodes = _chain(messaging, session, length)

    result = processor.serialize(session, nodes[-1])
    depth = 0
    current = result
    while PROP_SAKAI_PREVIOUS_MESSAGE in current:
        current = current[PROP_SAKAI_PREVIOUS_MESSAGE]
        depth += 1
    assert depth == length - 1
    assert current["id"] == "m0"

    writer, buffer = _writer()
    processor.write_node(writer, session, nodes[-1])
    text = buffer.getvalue()
    assert writer.done
    assert text.count(f'"{PROP_SAKAI_PREVIOUS_MESSAGE}":{{') == length - 1


def test_cycle_at_the_end_of_a_long_chain(processor, messaging, session):
    length = sys.getrecursionlimit() + 50
    nodes = _chain(messaging, session, length)
    session.update_node(nodes[0].path, messaging.reply_properties(nodes[-1].name, {}))
    with pytest.raises(CycleDetected) as excinfo:
        processor.serialize(session, nodes[-1])
    assert excinfo.value.path == nodes[-1].path
    assert len(excinfo.value.chain) == length


@pytest.mark.parametrize("reference", [["a", "b"], "", "   "])
def test_unusable_previous_reference_is_fatal(processor, messaging, session, reference):
    node = messaging.create(session, {PROP_SAKAI_PREVIOUS_MESSAGE: reference}, "m1")
    with pytest.raises(SerializationError) as excinfo:
        processor.serialize(session, node)
    assert not isinstance(excinfo.value, CycleDetected)
    assert excinfo.value.path == node.path
