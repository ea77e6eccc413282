# APEX/apex_packet.py
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from .apex_events import CreditActions, Events

# Bill index 1..7 -> display name. Matches the US Apex dataset; override per market.
DEFAULT_BILL_NAMES: Tuple[str, ...] = ("$1", "$2", "$5", "$10", "$20", "$50", "$100")


def bytes_to_text(data: bytes) -> str:
    """b'\\x02\\x08' -> '02 08'"""
    return bytes(data).hex(" ").upper()


def format_serial_number(sn: Sequence[int], mask: bool = False) -> str:
    """
    Render the 5 identity bytes of a serial number reply as hex digits.

    The serial number is 9 digits long: four packed BCD bytes plus one trailing
    byte, so the trailing byte is written without zero padding. That byte is
    read as a *signed* value unless `mask` is set, so anything >= 0x80 renders
    with a leading '-' (deployed firmware tooling expects this).
    """
    if len(sn) != 5:
        raise ValueError(f"Serial number is 5 bytes, got {len(sn)}")
    head = "".join(f"{b & 0xFF:02x}" for b in sn[:4])
    last = sn[4] & 0xFF
    if not mask and last >= 0x80:
        last -= 0x100
    return head + format(last, "x")


@dataclass(frozen=True)
class ApexResponse:
    credit_action: CreditActions
    model: int
    firmware_revision: int
    events: Tuple[Events, ...]
    bill_name: Optional[str]
    raw: str


class ApexCodec:
    """
    Frame builder/parser for the Pyramid Apex RS-232 (polled, 9600 7E1) protocol.

    Host frames are 8 bytes, slave replies 11 bytes:
        host : [STX][LEN][TYPE|ACK][D0][D1][D2][ETX][CHK]
        slave: [STX][LEN][TYPE|ACK][D0][D1][D2][D3][D4][D5][ETX][CHK]
    CHK is the XOR of everything between STX and ETX. The ACK bit toggles on
    every host message so the acceptor can tell a retransmit from a new poll.

    Not thread-safe: only the courier loop builds frames.
    """

    STX = 0x02
    ETX = 0x03

    # === Message types (high nibble of byte 2) ===
    MSG_HOST  = 0x10  # Host -> acceptor, normal poll
    MSG_SLAVE = 0x20  # Acceptor -> host, normal reply
    MSG_AUX   = 0x60  # Auxiliary / extended commands

    # === Host byte D1 ===
    ESCROW_MODE = 0x10  # Hold bills in escrow until the host says stack/return

    # === Auxiliary payloads ===
    RESET_DATA         = (0x7F, 0x7F, 0x7F)  # Soft reset; the acceptor reboots without replying
    SERIAL_NUMBER_DATA = (0x00, 0x00, 0x05)  # Query serial number; 5 bytes at D0..D4

    MAX_RESPONSE_SIZE = 11

    # === Reply bit maps ===
    STATE_BITS = (
        (0x01, Events.IDLING),
        (0x02, Events.ACCEPTING),
        (0x04, Events.ESCROWED),
        (0x08, Events.STACKING),
        (0x10, Events.STACKED),
        (0x20, Events.RETURNING),
        (0x40, Events.RETURNED),
    )
    EVENT_BITS = (
        (0x01, Events.CHEATED),
        (0x02, Events.BILL_REJECTED),
        (0x04, Events.BILL_JAMMED),
        (0x08, Events.STACKER_FULL),
    )
    CASSETTE_PRESENT = 0x10  # D1; cleared when the cash box is pulled
    CONDITION_BITS = (
        (0x01, Events.POWER_UP),
        (0x02, Events.INVALID_COMMAND),
        (0x04, Events.FAILURE),
    )

    def __init__(self, enabled_bills: int = 0x7F, bill_names: Iterable[str] = DEFAULT_BILL_NAMES):
        self.enabled_bills = enabled_bills & 0x7F
        self.bill_names: Tuple[str, ...] = tuple(bill_names)
        if len(self.bill_names) != 7:
            raise ValueError("Provide exactly seven bill names")
        self.ack = 0

    # ---------- outbound ----------
    def build_normal_command(self, action: CreditActions = CreditActions.NONE) -> bytes:
        return self._frame(self.MSG_HOST, (self.enabled_bills, self.ESCROW_MODE | action.value, 0x00))

    def build_reset_command(self) -> bytes:
        return self._frame(self.MSG_AUX, self.RESET_DATA)

    def build_identity_command(self) -> bytes:
        return self._frame(self.MSG_AUX, self.SERIAL_NUMBER_DATA)

    # ---------- inbound ----------
    def is_valid_frame(self, data: Optional[bytes]) -> bool:
        if not data or len(data) < 5:
            return False
        if data[0] != self.STX or data[-2] != self.ETX:
            return False
        if data[1] != len(data):
            return False
        return self._checksum(data[1:-2]) == data[-1]

    def parse_response(self, data: bytes) -> ApexResponse:
        """Decode a reply that already passed `is_valid_frame`."""
        d = list(data[3:-2]) + [0] * 6
        state, status, condition, model, firmware = d[0], d[1], d[2], d[3], d[4]

        events: List[Events] = [ev for bit, ev in self.STATE_BITS if state & bit]
        events += [ev for bit, ev in self.EVENT_BITS if status & bit]
        if not status & self.CASSETTE_PRESENT:
            events.append(Events.CASSETTE_REMOVED)
        events += [ev for bit, ev in self.CONDITION_BITS if condition & bit]

        index = (condition >> 3) & 0x07
        bill_name = self.bill_names[index - 1] if index else None
        if Events.STACKED in events and bill_name is not None:
            events.append(Events.CREDIT)

        # Anything sitting in escrow gets stacked on the next poll.
        action = CreditActions.ACCEPT if Events.ESCROWED in events else CreditActions.NONE

        return ApexResponse(
            credit_action=action,
            model=model,
            firmware_revision=firmware,
            events=tuple(events),
            bill_name=bill_name,
            raw=bytes_to_text(data),
        )

    # ---------- internals ----------
    @staticmethod
    def _checksum(body: bytes) -> int:
        chk = 0
        for b in body:
            chk ^= b
        return chk

    def _frame(self, msg_type: int, data: Sequence[int]) -> bytes:
        body = bytes([len(data) + 5, msg_type | self.ack]) + bytes(data)
        self.ack ^= 0x01
        return bytes([self.STX]) + body + bytes([self.ETX, self._checksum(body)])
