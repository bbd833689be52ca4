"""
Settlement contract event decoding.

Pure functions from raw receipt logs (as returned by ``eth_getTransactionReceipt``)
to ``ParsedEvent`` values. No network access; tested on literal log dicts.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import event_signature_to_log_topic, to_bytes

from ..utils.address_normalizer import topic_to_address


@dataclass(frozen=True)
class EventSpec:
    name: str
    indexed: Tuple[Tuple[str, str], ...]
    data: Tuple[Tuple[str, str], ...]

    @property
    def signature(self) -> str:
        params = [abi_type for _, abi_type in self.indexed + self.data]
        return f"{self.name}({','.join(params)})"

    @property
    def topic(self) -> bytes:
        return event_signature_to_log_topic(self.signature)


# Declaration order of parameters in the contract matches indexed-then-data here.
ESCROW_CREATED = EventSpec('EscrowCreated',
                           indexed=(('escrowId', 'uint256'), ('seller', 'address')),
                           data=(('amount', 'uint256'), ('releaseTime', 'uint256')))
ESCROW_FUNDED = EventSpec('EscrowFunded',
                          indexed=(('escrowId', 'uint256'), ('buyer', 'address')),
                          data=(('token', 'address'), ('amount', 'uint256')))
ESCROW_SHIPPED = EventSpec('EscrowShipped',
                           indexed=(('escrowId', 'uint256'),),
                           data=())
ESCROW_RELEASED = EventSpec('EscrowReleased',
                            indexed=(('escrowId', 'uint256'), ('seller', 'address')),
                            data=(('amount', 'uint256'),))
ESCROW_REFUNDED = EventSpec('EscrowRefunded',
                            indexed=(('escrowId', 'uint256'), ('buyer', 'address')),
                            data=(('amount', 'uint256'),))

KNOWN_EVENTS: Dict[bytes, EventSpec] = {
    spec.topic: spec for spec in (
        ESCROW_CREATED, ESCROW_FUNDED, ESCROW_SHIPPED, ESCROW_RELEASED, ESCROW_REFUNDED)
}


@dataclass(frozen=True)
class ParsedEvent:
    name: str
    escrow_id: Optional[int]
    args: Dict[str, Any] = field(default_factory=dict)
    address: Optional[str] = None
    tx_hash: Optional[str] = None
    log_index: Optional[int] = None


def _as_bytes(value: Union[str, bytes, bytearray]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return to_bytes(hexstr=value) if value else b''


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16)


def _decode_topic(abi_type: str, topic: bytes) -> Any:
    if abi_type == 'address':
        return topic_to_address(topic)
    if abi_type.startswith('uint'):
        return int.from_bytes(topic, 'big')
    return topic


def parse_log(log: Mapping[str, Any],
              known_events: Mapping[bytes, EventSpec] = KNOWN_EVENTS) -> Optional[ParsedEvent]:
    """Decode one raw log. Unknown signatures and malformed logs yield None."""
    topics = [_as_bytes(t) for t in log.get('topics') or []]
    if not topics:
        return None
    spec = known_events.get(topics[0])
    if spec is None or len(topics) - 1 < len(spec.indexed):
        return None

    args: Dict[str, Any] = {}
    for (name, abi_type), topic in zip(spec.indexed, topics[1:]):
        args[name] = _decode_topic(abi_type, topic)

    if spec.data:
        try:
            values = decode([abi_type for _, abi_type in spec.data], _as_bytes(log.get('data') or '0x'))
        except DecodingError:
            return None
        for (name, _), value in zip(spec.data, values):
            args[name] = value

    # The escrow id is always the first indexed field.
    escrow_id = args.get(spec.indexed[0][0]) if spec.indexed else None
    return ParsedEvent(
        name=spec.name,
        escrow_id=escrow_id,
        args=args,
        address=log.get('address'),
        tx_hash=log.get('transactionHash'),
        log_index=_as_int(log.get('logIndex')),
    )


def parse_logs(logs: Iterable[Mapping[str, Any]]) -> List[ParsedEvent]:
    events = []
    for log in logs:
        event = parse_log(log)
        if event is not None:
            events.append(event)
    return events


def find_escrow_created_id(logs: Sequence[Mapping[str, Any]],
                           contract_address: Optional[str] = None) -> Optional[int]:
    """
    Scan logs for the EscrowCreated signature and return the first indexed
    escrow id. When ``contract_address`` is given, logs from other contracts
    are ignored. Returns None if no matching event exists.
    """
    for log in logs:
        if contract_address and (log.get('address') or '').lower() != contract_address.lower():
            continue
        topics = log.get('topics') or []
        if len(topics) < 2 or _as_bytes(topics[0]) != ESCROW_CREATED.topic:
            continue
        return int.from_bytes(_as_bytes(topics[1]), 'big')
    return None
