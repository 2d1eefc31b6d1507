import time
from types import SimpleNamespace

import pytest

from gossipmesh.messages import (
    FilterTag,
    FilterType,
    MessageQuery,
    MessageQueryResponse,
    MessageType,
    decode_message,
    decode_relay_message,
)
from gossipmesh.query import (
    NodeResponse,
    QueryParam,
    QueryResponse,
    default_query_params,
    default_query_timeout,
    k_random_members,
    new_query_response,
    relay_response,
    should_process_query,
)


def test_default_query_single_member():
    timeout = default_query_timeout(0.2, 16, 1)
    assert timeout == pytest.approx(0.2 * 16)

    params = default_query_params(0.2, 16, 1)
    assert params.filter_nodes is None
    assert params.filter_tags is None
    assert params.request_ack is False
    assert params.timeout == pytest.approx(timeout)


def test_default_query_timeout_scales_with_members():
    assert default_query_timeout(1.0, 2, 9) == pytest.approx(2.0)
    assert default_query_timeout(1.0, 2, 10) == pytest.approx(4.0)


def test_encode_filters():
    q = QueryParam(
        filter_nodes=["foo", "bar"],
        filter_tags={"role": "^web", "datacenter": "aws$"},
    )
    filters = q.encode_filters()
    assert len(filters) == 3
    assert filters[0][0] == FilterType.NODE
    assert filters[1][0] == FilterType.TAG
    assert filters[2][0] == FilterType.TAG
    assert decode_message(filters[0][1:]) == ["foo", "bar"]
    tags = {decode_message(f[1:], FilterTag).tag for f in filters[1:]}
    assert tags == {"role", "datacenter"}


def test_encode_filters_empty():
    assert QueryParam().encode_filters() == []


TAGS = {"role": "webserver", "datacenter": "east-aws"}


def test_should_process_matching():
    q = QueryParam(
        filter_nodes=["foo", "bar", "zip"],
        filter_tags={"role": "^web", "datacenter": "aws$"},
    )
    assert should_process_query(q.encode_filters(), "zip", TAGS) is True


def test_should_process_omit_node():
    q = QueryParam(filter_nodes=["foo", "bar"])
    assert should_process_query(q.encode_filters(), "zip", TAGS) is False


def test_should_process_missing_tag():
    q = QueryParam(filter_tags={"other": "cool"})
    assert should_process_query(q.encode_filters(), "zip", TAGS) is False


def test_should_process_bad_tag():
    q = QueryParam(filter_tags={"role": "db"})
    assert should_process_query(q.encode_filters(), "zip", TAGS) is False


def test_should_process_bad_regex_and_unknown_type():
    q = QueryParam(filter_tags={"role": "("})
    assert should_process_query(q.encode_filters(), "zip", TAGS) is False
    assert should_process_query([b"\x07\x90"], "zip", TAGS) is False


def _nodes():
    statuses = ["alive", "failed", "left"]
    return [
        SimpleNamespace(name=f"test{i}", status=statuses[i % 3]) for i in range(90)
    ]


def test_k_random_members():
    nodes = _nodes()

    def filter_func(m):
        return m.name == "test0" or m.status != "alive"

    s1 = k_random_members(3, nodes, filter_func)
    s2 = k_random_members(3, nodes, filter_func)
    s3 = k_random_members(3, nodes, filter_func)

    names = [[m.name for m in s] for s in (s1, s2, s3)]
    assert names[0] != names[1]
    assert names[0] != names[2]
    assert names[1] != names[2]

    for s in (s1, s2, s3):
        assert len(s) == 3
        assert len({m.name for m in s}) == 3
        for m in s:
            assert m.name != "test0"
            assert m.status == "alive"


def test_k_random_members_empty_and_exhaustive():
    assert k_random_members(3, []) == []
    two = [SimpleNamespace(name="a"), SimpleNamespace(name="b")]
    picked = k_random_members(5, two)
    assert sorted(m.name for m in picked) == ["a", "b"]


def test_query_response_delivers_and_closes():
    qr = QueryResponse(query_id=7, ltime=3, deadline=time.time() + 10, capacity=2)
    qr.send_response(NodeResponse("a", b"1"))
    qr.send_response(NodeResponse("b", b"2"))
    with pytest.raises(RuntimeError, match="dropping"):
        qr.send_response(NodeResponse("c", b"3"))
    assert qr.has_responded("a")
    assert not qr.has_responded("c")
    assert qr.finished() is False
    qr.close()
    assert qr.finished() is True
    assert list(qr.responses()) == [NodeResponse("a", b"1"), NodeResponse("b", b"2")]
    qr.send_response(NodeResponse("d", b"4"))
    assert list(qr.responses()) == []


def test_query_response_timeout_without_close():
    qr = QueryResponse(query_id=1, ltime=1, deadline=time.time() + 10, capacity=1)
    start = time.monotonic()
    assert list(qr.responses(timeout=0.05)) == []
    assert time.monotonic() - start < 5


def test_query_response_finished_after_deadline():
    qr = QueryResponse(query_id=1, ltime=1, deadline=time.time() - 1, capacity=1)
    assert qr.finished() is True
    assert qr.deadline() < time.time()


def test_new_query_response_with_ack():
    msg = MessageQuery(ltime=5, id=9, flags=1, timeout=10.0)
    qr = new_query_response(2, msg)
    assert qr.id == 9
    assert qr.ltime == 5
    assert qr.deadline() > time.time()
    qr.send_ack(MessageQueryResponse(from_node="x", flags=1))
    assert qr.has_acked("x")
    qr.close()
    assert list(qr.acks()) == ["x"]


def test_send_ack_without_ack_request_fails():
    qr = new_query_response(2, MessageQuery(timeout=10.0))
    with pytest.raises(RuntimeError):
        qr.send_ack(MessageQueryResponse(from_node="x"))
    qr.close()
    assert list(qr.acks()) == []


class _Transport:
    def __init__(self):
        self.sent = []

    def send_to_address(self, address, name, raw):
        self.sent.append((address, name, raw))


def _member(name, status="alive", pmax=5, addr="10.0.0.1", port=7946):
    return SimpleNamespace(
        name=name, status=status, protocol_max=pmax, addr=addr, port=port
    )


def test_relay_response_zero_factor_or_small_cluster():
    t = _Transport()
    resp = MessageQueryResponse(from_node="me")
    relay_response(t, 0, ("127.0.0.1", 1234), "src", resp, [_member("a")], "me", 1024)
    relay_response(t, 2, ("127.0.0.1", 1234), "src", resp, [_member("a")], "me", 1024)
    assert t.sent == []


def test_relay_response_sends_to_eligible_members():
    t = _Transport()
    members = [
        _member("me"),
        _member("old", pmax=4),
        _member("dead", status="failed"),
        _member("peer", addr=bytes([10, 0, 0, 9]), port=8000),
    ]
    resp = MessageQueryResponse(ltime=3, id=4, from_node="me", payload=b"hi")
    relay_response(t, 1, ("127.0.0.1", 1234), "src", resp, members, "me", 1024)
    assert len(t.sent) == 1
    address, name, raw = t.sent[0]
    assert address == "10.0.0.9:8000"
    assert name == "peer"
    header, inner = decode_relay_message(raw)
    assert header.dest_addr == ("127.0.0.1", 1234)
    assert header.dest_name == "src"
    assert inner[0] == MessageType.QUERY_RESPONSE
    assert decode_message(inner[1:], MessageQueryResponse) == resp


def test_relay_response_size_limit():
    t = _Transport()
    members = [_member("me"), _member("peer")]
    resp = MessageQueryResponse(from_node="me", payload=b"x" * 100)
    with pytest.raises(ValueError, match="exceeds limit of 10 bytes"):
        relay_response(t, 1, ("127.0.0.1", 1234), "src", resp, members, "me", 10)
    assert t.sent == []