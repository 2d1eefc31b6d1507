import time

import pytest

from gossipmesh.event import EventType, MemberEvent, Query, UserEvent
from gossipmesh.messages import MessageQueryResponse, MessageType, decode_message


class FakeHost:
    def __init__(self, limit=1024):
        self.node_name = "local"
        self.query_response_size_limit = limit
        self.use_new_time_format = True
        self.sent = []
        self.relayed = []

    def send_to_address(self, address, name, raw):
        self.sent.append((address, name, raw))

    def relay_response(self, relay_factor, addr, node_name, resp):
        self.relayed.append((relay_factor, addr, node_name, resp))


def test_member_event():
    expected = [
        (EventType.MEMBER_JOIN, "member-join"),
        (EventType.MEMBER_LEAVE, "member-leave"),
        (EventType.MEMBER_FAILED, "member-failed"),
        (EventType.MEMBER_UPDATE, "member-update"),
        (EventType.MEMBER_REAP, "member-reap"),
    ]
    for kind, text in expected:
        me = MemberEvent(type=kind)
        assert me.event_type() == kind
        assert str(me) == text

    with pytest.raises(ValueError):
        str(MemberEvent(type=EventType.USER))


def test_user_event():
    ue = UserEvent(name="test", payload=b"foobar")
    assert ue.event_type() == EventType.USER
    assert str(ue) == "user-event: test"


def test_query():
    q = Query(ltime=42, name="update", payload=b"abcd1234")
    assert q.event_type() == EventType.QUERY
    assert str(q) == "query: update"


def test_event_type_string():
    events = list(EventType)
    expect = ["member-join", "member-leave", "member-failed",
              "member-update", "member-reap", "user", "query"]
    assert [str(e) for e in events] == expect
    with pytest.raises(ValueError):
        EventType(100)


def _query(host, **kwargs):
    defaults = dict(
        ltime=9,
        name="q",
        host=host,
        query_id=77,
        addr=bytes([127, 0, 0, 1]),
        port=7946,
        source_node="node-a",
        deadline=time.time() + 60,
        relay_factor=2,
    )
    defaults.update(kwargs)
    return Query(**defaults)


def test_create_response():
    q = _query(FakeHost())
    assert q.create_response(b"hi") == MessageQueryResponse(
        ltime=9, id=77, from_node="local", payload=b"hi"
    )


def test_respond_sends_and_relays_once():
    host = FakeHost()
    q = _query(host)
    assert q.source_node() == "node-a"
    q.respond(b"answer")

    assert len(host.sent) == 1
    address, name, raw = host.sent[0]
    assert address == "127.0.0.1:7946"
    assert name == "node-a"
    assert raw[0] == MessageType.QUERY_RESPONSE
    resp = decode_message(raw[1:], MessageQueryResponse)
    assert resp == MessageQueryResponse(ltime=9, id=77, from_node="local", payload=b"answer")
    assert host.relayed == [(2, ("127.0.0.1", 7946), "node-a", resp)]
    assert q.deadline() is None

    with pytest.raises(RuntimeError, match="response already sent"):
        q.respond(b"again")
    assert len(host.sent) == 1


def test_respond_ipv6_address():
    host = FakeHost()
    q = _query(host, addr=bytes(15) + b"\x01")
    q.respond(b"x")
    assert host.sent[0][0] == "[::1]:7946"


def test_respond_past_deadline():
    host = FakeHost()
    q = _query(host, deadline=time.time() - 1)
    with pytest.raises(RuntimeError, match="past the deadline"):
        q.respond(b"late")
    assert host.sent == []


def test_response_size_limit():
    host = FakeHost(limit=10)
    q = _query(host)
    with pytest.raises(ValueError, match="exceeds limit of 10 bytes"):
        q.check_response_size(b"x" * 11)
    with pytest.raises(RuntimeError, match="exceeds limit of 10 bytes"):
        q.respond(b"x" * 100)
    assert host.sent == []