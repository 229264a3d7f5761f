"""Tests for the WebSocket chat relay with multi-client support.

Protocol recap:
1. Client connects to /ws and sends {type: "join", userId, roomId} (no reply)
2. Client sends {type: "message", roomId, senderId, content}
3. Every connection joined to roomId (sender included) receives
   {type: "message", message: {id, roomId, senderId, content, createdAt}}
4. Problems are reported to the sender only as {type: "error", error}

Joins are not acknowledged, so join_room() follows the join with a frame the
server always rejects and waits for that rejection: frames on one connection
are handled in order, so the join is known to be applied afterwards.
"""
import pytest
from fastapi.testclient import TestClient

from relay.chat.manager import (
    JOIN_FIELDS_REQUIRED,
    MALFORMED_FRAME,
    MESSAGE_FIELDS_REQUIRED,
    NOT_JOINED,
    PERSISTENCE_FAILED,
)
from relay.chat.store import InMemoryStore, set_store
from relay.main import app


@pytest.fixture
def client():
    """TestClient with the app lifespan running.

    Entering the client shares one event loop between every socket opened
    in a test, so broadcasts reach the other sessions the way they would in
    a real server.
    """
    with TestClient(app) as test_client:
        yield test_client


def sync(ws):
    """Round-trip a rejected frame so all earlier frames are processed."""
    ws.send_json({"type": "message"})
    response = ws.receive_json()
    assert response == {"type": "error", "error": MESSAGE_FIELDS_REQUIRED}


def join_room(ws, user_id, room_id):
    """Helper to join a room and wait until the server has applied it."""
    ws.send_json({"type": "join", "userId": user_id, "roomId": room_id})
    sync(ws)


def send_chat(ws, room_id, sender_id, content):
    ws.send_json({
        "type": "message",
        "roomId": room_id,
        "senderId": sender_id,
        "content": content,
    })


def receive_message(ws):
    """Helper to receive and unwrap a message delivery frame."""
    frame = ws.receive_json()
    assert frame["type"] == "message", frame
    return frame["message"]


def test_two_clients_exchange_messages_in_same_room(client):
    """A and B in room-42 both receive each other's messages with the same id."""
    room_id = "room-42"

    with client.websocket_connect("/ws") as ws_a, \
         client.websocket_connect("/ws") as ws_b:

        join_room(ws_a, "u1", room_id)
        join_room(ws_b, "u2", room_id)

        send_chat(ws_a, room_id, "u1", "hi")
        echo = receive_message(ws_a)
        delivered = receive_message(ws_b)

        assert echo == delivered
        assert delivered["content"] == "hi"
        assert delivered["senderId"] == "u1"
        assert delivered["roomId"] == room_id
        assert delivered["id"]
        assert delivered["createdAt"]

        send_chat(ws_b, room_id, "u2", "hey")
        from_b = receive_message(ws_a)
        assert from_b["content"] == "hey"
        assert from_b["senderId"] == "u2"
        assert receive_message(ws_b) == from_b

    history = client.get(f"/api/messages/{room_id}").json()
    assert [m["content"] for m in history] == ["hi", "hey"]
    assert history[0]["id"] == echo["id"]
    assert history[1]["id"] == from_b["id"]


def test_three_clients_same_room_all_receive(client):
    """Every connection joined to the room gets the broadcast."""
    room_id = "room-three"

    with client.websocket_connect("/ws") as ws1, \
         client.websocket_connect("/ws") as ws2, \
         client.websocket_connect("/ws") as ws3:

        join_room(ws1, "seller", room_id)
        join_room(ws2, "buyer", room_id)
        join_room(ws3, "buyer", room_id)  # second tab of the same buyer

        send_chat(ws2, room_id, "buyer", "Is it still available?")

        recv1 = receive_message(ws1)
        recv2 = receive_message(ws2)
        recv3 = receive_message(ws3)
        assert recv1 == recv2 == recv3
        assert recv1["content"] == "Is it still available?"


def test_messages_from_one_sender_arrive_in_send_order(client):
    room_id = "room-order"

    with client.websocket_connect("/ws") as ws_a, \
         client.websocket_connect("/ws") as ws_b:

        join_room(ws_a, "u1", room_id)
        join_room(ws_b, "u2", room_id)

        for i in range(5):
            send_chat(ws_a, room_id, "u1", f"msg {i}")

        received = [receive_message(ws_b)["content"] for _ in range(5)]
        assert received == [f"msg {i}" for i in range(5)]


def test_different_rooms_are_isolated(client):
    """Clients in different rooms don't receive each other's messages."""
    with client.websocket_connect("/ws") as ws1, \
         client.websocket_connect("/ws") as ws2:

        join_room(ws1, "u1", "room-isolated-1")
        join_room(ws2, "u2", "room-isolated-2")

        send_chat(ws1, "room-isolated-1", "u1", "Message in room 1")
        assert receive_message(ws1)["content"] == "Message in room 1"

        # If room 1's message had leaked, it would be ws2's next frame
        send_chat(ws2, "room-isolated-2", "u2", "Message in room 2")
        data2 = receive_message(ws2)
        assert data2["content"] == "Message in room 2"
        assert data2["roomId"] == "room-isolated-2"


def test_message_before_join_is_rejected(client):
    """A connection that never joined gets an error and nothing is stored."""
    with client.websocket_connect("/ws") as ws:
        send_chat(ws, "room-unjoined", "u1", "hello?")

        response = ws.receive_json()
        assert response == {"type": "error", "error": NOT_JOINED}

    assert client.get("/api/messages/room-unjoined").json() == []


def test_unjoined_connection_receives_no_broadcast(client):
    room_id = "room-observer"

    with client.websocket_connect("/ws") as member, \
         client.websocket_connect("/ws") as observer:

        join_room(member, "u1", room_id)
        send_chat(member, room_id, "u1", "members only")
        receive_message(member)

        # Next frame for the observer must be its own rejection
        sync(observer)


@pytest.mark.parametrize("frame", [
    {"type": "join"},
    {"type": "join", "userId": "u1"},
    {"type": "join", "roomId": "r1"},
    {"type": "join", "userId": "", "roomId": "r1"},
])
def test_join_missing_fields_reports_error_without_joining(client, frame):
    with client.websocket_connect("/ws") as ws:
        ws.send_json(frame)
        assert ws.receive_json() == {"type": "error", "error": JOIN_FIELDS_REQUIRED}

        # Still Unjoined
        send_chat(ws, "r1", "u1", "hello")
        assert ws.receive_json() == {"type": "error", "error": NOT_JOINED}


@pytest.mark.parametrize("frame", [
    {"type": "message", "senderId": "u1", "content": "hi"},
    {"type": "message", "roomId": "r1", "content": "hi"},
    {"type": "message", "roomId": "r1", "senderId": "u1"},
    {"type": "message", "roomId": "r1", "senderId": "u1", "content": ""},
])
def test_message_missing_fields_reports_error(client, frame):
    with client.websocket_connect("/ws") as ws:
        join_room(ws, "u1", "r1")
        ws.send_json(frame)
        assert ws.receive_json() == {"type": "error", "error": MESSAGE_FIELDS_REQUIRED}

    assert client.get("/api/messages/r1").json() == []


def test_malformed_frame_keeps_connection_open(client):
    """Invalid JSON is reported, and the same connection keeps working."""
    with client.websocket_connect("/ws") as ws:
        ws.send_text("this is not json")
        assert ws.receive_json() == {"type": "error", "error": MALFORMED_FRAME}

        ws.send_text("[1, 2, 3]")
        assert ws.receive_json() == {"type": "error", "error": MALFORMED_FRAME}

        ws.send_bytes(b"\xff\xfe")
        assert ws.receive_json() == {"type": "error", "error": MALFORMED_FRAME}

        join_room(ws, "u1", "room-malformed")
        send_chat(ws, "room-malformed", "u1", "still here")
        assert receive_message(ws)["content"] == "still here"


def test_deeply_nested_frame_keeps_connection_open(client):
    """JSON nested past the decoder's recursion limit is just another bad frame."""
    with client.websocket_connect("/ws") as ws:
        ws.send_text("[" * 200000)
        assert ws.receive_json() == {"type": "error", "error": MALFORMED_FRAME}

        join_room(ws, "u1", "room-nested")
        send_chat(ws, "room-nested", "u1", "survived")
        assert receive_message(ws)["content"] == "survived"


def test_unrecognized_frame_type_is_ignored(client):
    with client.websocket_connect("/ws") as ws:
        join_room(ws, "u1", "room-unknown")
        ws.send_json({"type": "typing", "isTyping": True})
        ws.send_json({"no_type": True})
        # The next reply is the sync rejection, so the frames above produced nothing
        sync(ws)


def test_join_frames_can_be_sent_as_binary(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_bytes(b'{"type": "join", "userId": "u1", "roomId": "room-bytes"}')
        sync(ws)
        send_chat(ws, "room-bytes", "u1", "binary join")
        assert receive_message(ws)["content"] == "binary join"


def test_second_join_overwrites_identity(client):
    """Re-joining moves the connection to the new room."""
    with client.websocket_connect("/ws") as mover, \
         client.websocket_connect("/ws") as stayer:

        join_room(mover, "u1", "room-old")
        join_room(stayer, "u2", "room-old")
        join_room(mover, "u1", "room-new")

        send_chat(stayer, "room-old", "u2", "anyone there?")
        assert receive_message(stayer)["content"] == "anyone there?"

        # mover left room-old, so its next frame is the sync rejection
        sync(mover)


def test_persistence_failure_reports_to_sender_only(client):
    class FailingStore(InMemoryStore):
        async def create_message(self, room_id, sender_id, content):
            raise RuntimeError("database unavailable")

    set_store(FailingStore())
    room_id = "room-broken-store"

    with client.websocket_connect("/ws") as sender, \
         client.websocket_connect("/ws") as other:

        join_room(sender, "u1", room_id)
        join_room(other, "u2", room_id)

        send_chat(sender, room_id, "u1", "will not be saved")
        assert sender.receive_json() == {"type": "error", "error": PERSISTENCE_FAILED}

        # Nothing was broadcast to the other member
        sync(other)

        # The sender's connection is still usable
        sync(sender)
