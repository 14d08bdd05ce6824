from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from eth_utils import event_signature_to_log_topic, function_signature_to_4byte_selector, to_checksum_address

from chainmetrics.domain.errors import AggregationParseError
from chainmetrics.domain.value_types import Topic0


# --------- 32B word slicing (fast, no eth_abi) --------------------------------
def _word(b: bytes, i: int) -> bytes:
    w = b[i*32:(i+1)*32]
    if len(w) != 32:
        raise AggregationParseError(f"word {i} out of bounds (data is {len(b)} bytes)")
    return w

def _u256(w: bytes) -> int:
    return int.from_bytes(w, "big")

def _i256(w: bytes) -> int:
    v = int.from_bytes(w, "big")
    return v - (1 << 256) if (v & (1 << 255)) else v

def _addr_from_word(w: bytes) -> str:
    return to_checksum_address("0x" + w[-20:].hex())

def _hexstr_to_bytes(s: str | None) -> bytes:
    if not s:
        return b""
    h = s[2:] if s[:2].lower() == "0x" else s
    if len(h) % 2: h = "0" + h
    try:
        return bytes.fromhex(h)
    except ValueError as e:
        raise AggregationParseError(f"invalid hex data: {e}") from e


def _decode_static(typ: str, w: bytes) -> Any:
    if typ.startswith("uint"):
        return _u256(w)
    if typ.startswith("int"):
        return _i256(w)
    if typ == "address":
        return _addr_from_word(w)
    if typ == "bool":
        return _u256(w) != 0
    if typ.startswith("bytes") and typ != "bytes":
        return "0x" + w.hex()
    raise AggregationParseError(f"unsupported ABI type {typ!r}")


def _is_dynamic(typ: str) -> bool:
    return typ.endswith("[]") or typ in ("bytes", "string")


@dataclass(slots=True, frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(slots=True, frozen=True)
class EventABI:
    name: str
    inputs: tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic0(self) -> Topic0:
        return Topic0("0x" + event_signature_to_log_topic(self.signature).hex())

    @classmethod
    def parse(cls, text: str) -> "EventABI":
        """Build from a human-readable signature, e.g.
        ``RewardClaimed(address indexed user, uint256 ticketId, uint256 amount, uint8 tier)``.
        """
        name, _, rest = text.strip().partition("(")
        body = rest.rstrip(")").strip()
        inputs: list[EventInput] = []
        for n, part in enumerate(p.split() for p in body.split(",") if p.strip()):
            indexed = "indexed" in part
            words = [w for w in part if w != "indexed"]
            inputs.append(EventInput(name=words[1] if len(words) > 1 else f"arg{n}",
                                     type=words[0], indexed=indexed))
        return cls(name=name.strip(), inputs=tuple(inputs))


def selector(signature: str) -> str:
    """4-byte function selector as 0x-hex, e.g. ``totalSupply()`` -> ``0x18160ddd``."""
    return "0x" + function_signature_to_4byte_selector(signature).hex()


def decode_log(abi: EventABI, topics: Sequence[str], data_hex: str) -> dict[str, Any]:
    """Decode a raw log into an ordered name -> value mapping.

    Indexed dynamic values are only available as their hash and are returned as hex.
    Raises AggregationParseError on any malformed input.
    """
    if not topics or topics[0].lower() != abi.topic0:
        raise AggregationParseError(f"topic0 does not match {abi.signature}")
    data = _hexstr_to_bytes(data_hex)
    indexed_topics = list(topics[1:])

    out: dict[str, Any] = {}
    head = 0
    for inp in abi.inputs:
        if inp.indexed:
            if not indexed_topics:
                raise AggregationParseError(f"missing topic for indexed {inp.name}")
            w = _hexstr_to_bytes(indexed_topics.pop(0))
            if len(w) != 32:
                raise AggregationParseError(f"bad topic length for {inp.name}")
            out[inp.name] = "0x" + w.hex() if _is_dynamic(inp.type) else _decode_static(inp.type, w)
            continue

        w = _word(data, head)
        head += 1
        if inp.type.endswith("[]"):
            elem = inp.type[:-2]
            offset = _u256(w)
            if offset % 32:
                raise AggregationParseError(f"misaligned offset for {inp.name}")
            base = offset // 32
            length = _u256(_word(data, base))
            if length > (len(data) // 32):
                raise AggregationParseError(f"array length {length} exceeds data for {inp.name}")
            out[inp.name] = tuple(_decode_static(elem, _word(data, base + 1 + k)) for k in range(length))
        elif _is_dynamic(inp.type):
            offset = _u256(w) // 32
            length = _u256(_word(data, offset))
            raw = data[(offset + 1) * 32:(offset + 1) * 32 + length]
            if len(raw) != length:
                raise AggregationParseError(f"truncated {inp.type} for {inp.name}")
            out[inp.name] = raw.decode("utf-8", "replace") if inp.type == "string" else "0x" + raw.hex()
        else:
            out[inp.name] = _decode_static(inp.type, w)
    return out
