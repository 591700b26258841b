import json

import pytest

from mcp_broker.registry import ClientType, Role
from mcp_broker.router import (
    MessageKind,
    MessageRouter,
    classify,
    extract_event,
    parse_frame,
    webhook_filename,
)
from mcp_broker.exceptions import ProtocolError

from conftest import FIXED_NOW, RecordingProcess


def identity(client_type, name="bot"):
    return json.dumps({"type": "client-identity", "clientType": client_type, "clientName": name})


MERGE_FRAME = '{"op":"merge","payload":{"github":{"action":"opened"}}}'


def test_classify_priority_order():
    assert classify({"type": "client-identity", "op": "merge", "payload": {}}) is MessageKind.IDENTITY
    assert classify({"op": "merge", "payload": {}, "jsonrpc": "2.0", "method": "x"}) is MessageKind.WEBHOOK_MERGE
    assert classify({"jsonrpc": "2.0", "method": "tools/list", "id": 1}) is MessageKind.JSONRPC_REQUEST


@pytest.mark.parametrize("document", [
    {"jsonrpc": "2.0", "id": 1, "result": {}},
    {"method": "tools/list"},
    {"op": "merge"},
    {"op": "merge", "payload": "not-an-object"},
    {"type": "something-else"},
    [1, 2, 3],
    "hello",
    42,
    None,
])
def test_classify_unclassifiable(document):
    assert classify(document) is MessageKind.UNCLASSIFIABLE


def test_parse_frame_accepts_utf8_bytes():
    assert parse_frame('{"a": "é"}'.encode("utf-8")) == {"a": "é"}


def test_parse_frame_rejects_garbage():
    with pytest.raises(ProtocolError):
        parse_frame("{not json")

    with pytest.raises(ProtocolError):
        parse_frame(b"\xff\xfe{}")


def test_parse_frame_rejects_non_finite_numbers():
    for constant in ("NaN", "Infinity", "-Infinity"):
        with pytest.raises(ProtocolError):
            parse_frame('{"v": ' + constant + "}")


def test_webhook_filename_is_filesystem_safe():
    name = webhook_filename(FIXED_NOW)

    assert name == "webhook-2024-05-01T12-30-45-123Z.json"
    stamp = name[len("webhook-"):-len(".json")]
    assert ":" not in stamp and "." not in stamp


def test_extract_event_prefers_embedded_github_event():
    assert extract_event({"github": {"action": "closed"}}) == {"action": "closed"}
    assert extract_event({"action": "closed"}) == {"action": "closed"}


def test_role_follows_most_recent_identity(router, registry):
    client = registry.register("ws")

    for client_type in ["auto-commenter", "ai-analyzer", "custom-bot", "webhook-listener"]:
        assert router.handle(client, identity(client_type)) is MessageKind.IDENTITY

    assert registry.get(client).role == Role(ClientType.WEBHOOK_LISTENER)


def test_identity_replay_is_idempotent(router, registry):
    client = registry.register("ws")

    router.handle(client, identity("ai-analyzer", "reviewer"))
    router.handle(client, identity("ai-analyzer", "reviewer"))

    info = registry.get(client)
    assert info.role == Role(ClientType.AI_ANALYZER)
    assert info.name == "reviewer"


def test_identity_defaults(router, registry):
    client = registry.register("ws")

    router.handle(client, '{"type": "client-identity"}')

    info = registry.get(client)
    assert info.role.kind is ClientType.UNIDENTIFIED
    assert info.name == "unnamed"


def test_identity_triggers_no_forwarding(router, registry, process, deliveries):
    registry.register("other")
    client = registry.register("ws")

    router.handle(client, identity("auto-commenter"))

    assert process.lines == []
    assert deliveries.calls == []


def test_identity_for_departed_client_is_ignored(router, registry):
    client = registry.register("ws")
    registry.remove(client)

    assert router.handle(client, identity("ai-analyzer")) is MessageKind.IDENTITY
    assert registry.get(client) is None


def test_merge_scenario(router, registry, process, deliveries):
    a = registry.register("ws-a")
    b = registry.register("ws-b")
    registry.register("ws-c")

    router.handle(a, identity("webhook-listener"))
    router.handle(b, identity("ai-analyzer"))

    assert router.handle(a, MERGE_FRAME) is MessageKind.WEBHOOK_MERGE

    assert deliveries.received("ws-b") == [MERGE_FRAME]
    assert deliveries.received("ws-a") == []
    assert deliveries.received("ws-c") == []

    assert len(process.lines) == 1
    request = process.lines[0]
    assert request["jsonrpc"] == "2.0"
    assert request["method"] == "tools/call"
    assert request["id"] == int(FIXED_NOW.timestamp() * 1000)
    assert request["params"]["name"] == "write_file"

    arguments = request["params"]["arguments"]
    assert arguments["path"] == "context-data/webhook-2024-05-01T12-30-45-123Z.json"
    assert json.loads(arguments["content"]) == {"action": "opened"}
    assert arguments["content"] == json.dumps({"action": "opened"}, indent=2)


def test_merge_fan_out_targets_exactly_commenters_and_analyzers(router, registry, deliveries):
    roles = {
        "ws-listener": "webhook-listener",
        "ws-commenter": "auto-commenter",
        "ws-analyzer": "ai-analyzer",
        "ws-analyzer-2": "ai-analyzer",
        "ws-other": "dashboard",
    }
    ids = {}
    for handle, client_type in roles.items():
        ids[handle] = registry.register(handle)
        router.handle(ids[handle], identity(client_type))
    registry.register("ws-unidentified")

    # Sender is an analyzer itself and must be excluded
    router.handle(ids["ws-analyzer"], MERGE_FRAME)

    assert len(deliveries.calls) == 1
    handles, message = deliveries.calls[0]
    assert sorted(handles) == ["ws-analyzer-2", "ws-commenter"]
    assert message == MERGE_FRAME


def test_merge_from_unidentified_sender(router, registry, process, deliveries):
    sender = registry.register("ws-sender")
    commenter = registry.register("ws-commenter")
    router.handle(commenter, identity("auto-commenter"))

    router.handle(sender, MERGE_FRAME)

    assert deliveries.received("ws-commenter") == [MERGE_FRAME]
    assert len(process.lines) == 1


def test_merge_without_targets_still_persists(router, registry, process, deliveries):
    sender = registry.register("ws")

    router.handle(sender, '{"op": "merge", "payload": {"action": "labeled"}}')

    assert deliveries.calls == []
    assert json.loads(process.lines[0]["params"]["arguments"]["content"]) == {"action": "labeled"}


def test_merge_fans_out_even_when_process_is_down(registry, broadcaster, deliveries):
    process = RecordingProcess(running=False)
    router = MessageRouter(registry, broadcaster, process, clock=lambda: FIXED_NOW)
    sender = registry.register("ws")
    analyzer = registry.register("ws-analyzer")
    router.handle(analyzer, identity("ai-analyzer"))

    assert router.handle(sender, MERGE_FRAME) is MessageKind.WEBHOOK_MERGE

    assert deliveries.received("ws-analyzer") == [MERGE_FRAME]
    assert process.lines == []


def test_custom_content_dir(registry, broadcaster, process):
    router = MessageRouter(registry, broadcaster, process, content_dir="store/", clock=lambda: FIXED_NOW)
    sender = registry.register("ws")

    router.handle(sender, MERGE_FRAME)

    path = process.lines[0]["params"]["arguments"]["path"]
    assert path == "store/webhook-2024-05-01T12-30-45-123Z.json"


def test_root_content_dir_is_kept(registry, broadcaster, process):
    router = MessageRouter(registry, broadcaster, process, content_dir="/", clock=lambda: FIXED_NOW)

    router.handle(registry.register("ws"), MERGE_FRAME)

    path = process.lines[0]["params"]["arguments"]["path"]
    assert path == "/webhook-2024-05-01T12-30-45-123Z.json"


def test_jsonrpc_forwarded_verbatim_without_broadcast(router, registry, process, deliveries):
    client = registry.register("ws")
    router.handle(registry.register("ws-analyzer"), identity("ai-analyzer"))
    request = {"jsonrpc": "2.0", "id": 7, "method": "tools/call",
               "params": {"name": "read_file", "arguments": {"path": "context-data/a.json"}}}

    assert router.handle(client, json.dumps(request, indent=4)) is MessageKind.JSONRPC_REQUEST

    assert process.lines == [request]
    assert deliveries.calls == []


@pytest.mark.parametrize("frame", [
    "{not json",
    "",
    b"\xff\xfe",
    '{"jsonrpc":"2.0","id":1,"method":"x","params":{"v":NaN}}',
    '{"jsonrpc":"2.0","id":1,"method":"x","params":{"v":-Infinity}}',
    '{"op":"merge","payload":{"github":{"score":Infinity}}}',
])
def test_malformed_frame_is_dropped(router, registry, process, deliveries, frame):
    client = registry.register("ws")

    assert router.handle(client, frame) is None

    assert client in registry
    assert process.lines == []
    assert deliveries.calls == []


def test_unclassifiable_frame_is_dropped(router, registry, process, deliveries):
    client = registry.register("ws")

    assert router.handle(client, '{"hello": "world"}') is MessageKind.UNCLASSIFIABLE
    assert router.handle(client, "[1, 2]") is MessageKind.UNCLASSIFIABLE

    assert process.lines == []
    assert deliveries.calls == []


def test_binary_merge_frame_is_fanned_out_as_text(router, registry, deliveries):
    sender = registry.register("ws")
    router.handle(registry.register("ws-commenter"), identity("auto-commenter"))

    router.handle(sender, MERGE_FRAME.encode("utf-8"))

    assert deliveries.received("ws-commenter") == [MERGE_FRAME]
