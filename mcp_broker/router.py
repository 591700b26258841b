"""
Message Router - Classifies client frames and applies the routing policy.

Frame kinds, checked in this order (first match wins):

    identity      {"type": "client-identity", "clientType": ..., "clientName": ...}
                  → update the sender's role in the registry
    webhook merge {"op": "merge", "payload": {...}}
                  → fan the frame out to auto-commenters and AI analyzers,
                    and ask the child to persist the event to the content store
    JSON-RPC      {"jsonrpc": ..., "method": ..., ["id", "params"]}
                  → forward to the child unchanged
    anything else → log and drop

The router never waits for the child: responses come back later through
the child's stdout and are broadcast by the Broadcaster.
"""

import json
import posixpath
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from mcp_broker.adapters.base import BaseProcessAdapter
from mcp_broker.broadcaster import Broadcaster
from mcp_broker.config import DEFAULT_CONTENT_DIR
from mcp_broker.exceptions import ProtocolError
from mcp_broker.logger import get_logger
from mcp_broker.registry import ClientRegistry, ClientType, Role


logger = get_logger(__name__)


# =============================================================================
# Wire constants
# =============================================================================

IDENTITY_TYPE = "client-identity"
MERGE_OP = "merge"
EVENT_KEY = "github"

WRITE_FILE_TOOL = "write_file"
TOOLS_CALL_METHOD = "tools/call"
JSONRPC_VERSION = "2.0"

FAN_OUT_TYPES = frozenset({ClientType.AUTO_COMMENTER, ClientType.AI_ANALYZER})


class MessageKind(str, Enum):
    """Classification of a parsed client frame."""

    IDENTITY = "identity"
    WEBHOOK_MERGE = "webhook-merge"
    JSONRPC_REQUEST = "jsonrpc-request"
    UNCLASSIFIABLE = "unclassifiable"


# =============================================================================
# Parsing and classification
# =============================================================================

def parse_frame(raw: Union[str, bytes], client_id: Optional[str] = None) -> Any:
    """
    Decode a websocket frame into a JSON value.

    Args:
        raw: Text frame, or binary frame holding UTF-8 text
        client_id: Sender, for error reporting

    Returns:
        The decoded JSON value (any type)

    Raises:
        ProtocolError: If the frame is not UTF-8 or not valid JSON
            (NaN and Infinity included)
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}", client_id=client_id)

    try:
        return json.loads(raw, parse_constant=_reject_constant)
    except ValueError as e:
        raise ProtocolError(f"Frame is not valid JSON: {e}", client_id=client_id)


def _reject_constant(name: str):
    raise ValueError(f"{name} is not a JSON value")


def classify(document: Any) -> MessageKind:
    """
    Classify a decoded frame.

    Non-object documents are always UNCLASSIFIABLE.
    """
    if not isinstance(document, dict):
        return MessageKind.UNCLASSIFIABLE

    if document.get("type") == IDENTITY_TYPE:
        return MessageKind.IDENTITY

    if document.get("op") == MERGE_OP and isinstance(document.get("payload"), dict):
        return MessageKind.WEBHOOK_MERGE

    if document.get("jsonrpc") and document.get("method"):
        return MessageKind.JSONRPC_REQUEST

    return MessageKind.UNCLASSIFIABLE


def extract_event(payload: Dict[str, Any]) -> Any:
    """Event object embedded in a merge payload."""
    if EVENT_KEY in payload:
        return payload[EVENT_KEY]
    return payload


def webhook_filename(now: datetime) -> str:
    """
    Filesystem-safe artifact name for an event received at `now`.

    The ISO-8601 UTC instant with millisecond precision has every ':' and
    '.' replaced by '-', e.g. webhook-2024-05-01T12-30-45-123Z.json.
    """
    now = now.astimezone(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H:%M:%S") + f".{now.microsecond // 1000:03d}Z"
    return "webhook-{}.json".format(stamp.replace(":", "-").replace(".", "-"))


def build_write_request(path: str, content: str, request_id: int) -> Dict[str, Any]:
    """Tool-invocation request asking the child to write `content` to `path`."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": TOOLS_CALL_METHOD,
        "params": {
            "name": WRITE_FILE_TOOL,
            "arguments": {
                "path": path,
                "content": content,
            },
        },
    }


def is_fan_out_target(role: Role) -> bool:
    return role.kind in FAN_OUT_TYPES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Router
# =============================================================================

class MessageRouter:
    """
    Routing policy engine for client frames.

    handle() runs to completion synchronously: registry updates, fan-out
    and child writes are all fire-and-forget, so frames from one
    connection are processed strictly in receipt order.
    """

    def __init__(self,
                 registry: ClientRegistry,
                 broadcaster: Broadcaster,
                 process: BaseProcessAdapter,
                 content_dir: str = DEFAULT_CONTENT_DIR,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize Message Router.

        Args:
            registry: Connection registry (role updates, fan-out targets)
            broadcaster: Delivers fan-out frames
            process: Child process adapter receiving forwarded lines
            content_dir: Content store directory used in persisted paths
            clock: Returns the current UTC time (injectable for tests)
        """
        self.registry = registry
        self.broadcaster = broadcaster
        self.process = process
        self.content_dir = content_dir or DEFAULT_CONTENT_DIR
        self.clock = clock or _utcnow

    def handle(self, client_id: str, raw: Union[str, bytes]) -> Optional[MessageKind]:
        """
        Route one frame received from client_id.

        Never raises. Malformed frames are logged and dropped; the
        connection stays open.

        Returns:
            The kind acted on, or None if the frame could not be decoded
        """
        try:
            document = parse_frame(raw, client_id)
        except ProtocolError as e:
            logger.warning(f"Dropping frame from {client_id}: {e.message}")
            return None

        kind = classify(document)

        if kind is MessageKind.IDENTITY:
            self._handle_identity(client_id, document)
        elif kind is MessageKind.WEBHOOK_MERGE:
            text = raw if isinstance(raw, str) else bytes(raw).decode("utf-8")
            self._handle_merge(client_id, text, document)
        elif kind is MessageKind.JSONRPC_REQUEST:
            self._handle_jsonrpc(client_id, document)
        else:
            logger.warning(f"Dropping unrecognized frame from {client_id}: {_preview(document)}")

        return kind

    def _handle_identity(self, client_id: str, document: Dict[str, Any]):
        role = Role.from_declared(document.get("clientType"))
        name = document.get("clientName") or "unnamed"

        if not self.registry.set_role(client_id, role, str(name)):
            return

        logger.info(f"Client {client_id} identified as: {role} ({name})")
        logger.info(f"Clients by role: {self.registry.counts_by_role()}")

    def _handle_merge(self, client_id: str, text: str, document: Dict[str, Any]):
        sender = self.registry.get(client_id)
        sender_role = sender.role if sender else "departed"
        logger.info(f"Webhook merge from {client_id} ({sender_role})")

        delivered = self.broadcaster.fan_out(text, is_fan_out_target, exclude=client_id)
        logger.info(f"Fanned webhook out to {delivered} client(s)")

        now = self.clock()
        filename = webhook_filename(now)
        event = extract_event(document["payload"])

        request = build_write_request(
            path=posixpath.join(self.content_dir, filename),
            content=json.dumps(event, indent=2, ensure_ascii=False),
            request_id=int(now.timestamp() * 1000)
        )

        if self.process.write_line(request):
            logger.info(f"Persisting webhook event as {filename}")

    def _handle_jsonrpc(self, client_id: str, document: Dict[str, Any]):
        logger.debug(f"Forwarding {document.get('method')} (id={document.get('id')}) from {client_id}")
        self.process.write_line(document)


def _preview(document: Any, limit: int = 100) -> str:
    text = json.dumps(document, ensure_ascii=False)
    return text if len(text) <= limit else text[:limit] + "..."
