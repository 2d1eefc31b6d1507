import ipaddress

import pytest

from gossipmesh.merge_delegate import MergeDelegate, NodeInfo, validate_member_info

IPV6_BYTES = bytes(range(1, 17))


def strict_names(name):
    if " " in name:
        raise ValueError("Node name contains invalid characters")
    if len(name) > 128:
        raise ValueError(f"Node name is {len(name)} characters.")


CASES = {
    "invalid-name-chars": ("space not allowed", bytes([1, 2, 3, 4]), b"", True,
                           "Node name contains invalid characters"),
    "invalid-name-chars-not-validated": ("space not allowed", bytes([1, 2, 3, 4]),
                                         b"", False, ""),
    "invalid-name-len": ("abcd" * 33, IPV6_BYTES, b"", True,
                         "Node name is 132 characters."),
    "invalid-name-len-not-validated": ("abcd" * 33, IPV6_BYTES, b"", False, ""),
    "invalid-ip": ("test", bytes([1, 2]), b"", False, "IP byte length is invalid"),
    "invalid-ip-2": ("test", bytes(range(1, 18)), b"", False,
                     "IP byte length is invalid"),
    "meta-too-long": ("test", IPV6_BYTES, b"a" * 513, False,
                      "Encoded length of tags exceeds limit"),
    "ipv4-okay": ("test", bytes([1, 1, 1, 1]), b"", False, ""),
    "ipv6-okay": ("test", bytes([1] * 16), b"", False, ""),
}


@pytest.mark.parametrize("case", sorted(CASES))
def test_validate_member_info(case):
    name, addr, meta, validate, err = CASES[case]
    node = NodeInfo(name=name, addr=addr, meta=meta)
    validator = strict_names if validate else None
    if err:
        with pytest.raises(ValueError) as info:
            validate_member_info(node, validator)
        assert err in str(info.value)
    else:
        assert validate_member_info(node, validator) is None


def _decode_tags(meta):
    return {"role": meta.decode()} if meta else {}


def test_node_to_member_fields():
    merged = []
    d = MergeDelegate(merged.extend, _decode_tags)
    node = NodeInfo(name="n1", addr=bytes([10, 0, 0, 1]), port=7946, meta=b"web",
                    state="left", pmin=1, pmax=5, pcur=4, dmin=2, dmax=5, dcur=4)
    m = d.node_to_member(node)
    assert m.name == "n1"
    assert m.addr == ipaddress.ip_address("10.0.0.1")
    assert m.port == 7946
    assert m.tags == {"role": "web"}
    assert m.status == "left"
    assert (m.protocol_min, m.protocol_max, m.protocol_cur) == (1, 5, 4)
    assert (m.delegate_min, m.delegate_max, m.delegate_cur) == (2, 5, 4)


def test_node_to_member_alive_has_none_status():
    d = MergeDelegate(lambda members: None, _decode_tags)
    m = d.node_to_member(NodeInfo(name="n", addr=bytes([1, 1, 1, 1])))
    assert m.status == "none"


def test_notify_merge_passes_all_members():
    merged = []
    d = MergeDelegate(merged.extend, _decode_tags)
    d.notify_merge([
        NodeInfo(name="a", addr=bytes([1, 1, 1, 1])),
        NodeInfo(name="b", addr=bytes([1] * 16)),
    ])
    assert [m.name for m in merged] == ["a", "b"]


def test_notify_merge_rejects_invalid_node():
    merged = []
    d = MergeDelegate(merged.extend, _decode_tags)
    with pytest.raises(ValueError, match="IP byte length is invalid"):
        d.notify_merge([
            NodeInfo(name="a", addr=bytes([1, 1, 1, 1])),
            NodeInfo(name="b", addr=bytes([1, 2])),
        ])
    assert merged == []


def test_notify_alive_and_callback_rejection():
    seen = []
    d = MergeDelegate(seen.append, _decode_tags)
    d.notify_alive(NodeInfo(name="peer", addr=bytes([1, 1, 1, 1])))
    assert len(seen) == 1
    assert [m.name for m in seen[0]] == ["peer"]

    def refuse(members):
        raise PermissionError("merge refused")

    with pytest.raises(PermissionError, match="merge refused"):
        MergeDelegate(refuse, _decode_tags).notify_alive(
            NodeInfo(name="peer", addr=bytes([1, 1, 1, 1]))
        )


def test_name_validator_applied_by_delegate():
    d = MergeDelegate(lambda members: None, _decode_tags, strict_names)
    with pytest.raises(ValueError, match="invalid characters"):
        d.node_to_member(NodeInfo(name="bad name", addr=bytes([1, 1, 1, 1])))