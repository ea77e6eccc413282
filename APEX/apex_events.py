# APEX/apex_events.py
from dataclasses import dataclass
from enum import Enum
from typing import Union


class Events(Enum):
    """Device states and conditions reported in an Apex RS-232 response."""
    # data byte 0: acceptance state
    IDLING           = "Idling"
    ACCEPTING        = "Accepting"
    ESCROWED         = "Escrowed"
    STACKING         = "Stacking"
    STACKED          = "Stacked"
    RETURNING        = "Returning"
    RETURNED         = "Returned"

    # data byte 1: events / faults
    CHEATED          = "Cheated"
    BILL_REJECTED    = "BillRejected"
    BILL_JAMMED      = "BillJammed"
    STACKER_FULL     = "StackerFull"
    CASSETTE_REMOVED = "CassetteRemoved"

    # data byte 2: device conditions
    POWER_UP         = "PowerUp"
    INVALID_COMMAND  = "InvalidCommand"
    FAILURE          = "Failure"

    # synthesized from STACKED + bill value
    CREDIT           = "Credit"


class CreditActions(Enum):
    """What the next normal command tells the acceptor to do with an escrowed bill."""
    NONE   = 0x00
    ACCEPT = 0x20  # stack
    RETURN = 0x40


class Direction(Enum):
    TX = "tx"
    RX = "rx"


@dataclass(frozen=True)
class ConnectionFailureEvent:
    failure_count: int


@dataclass(frozen=True)
class SerialDataEvent:
    direction: Direction
    data: str


@dataclass(frozen=True)
class CreditEvent:
    bill_name: str
    raw: str


@dataclass(frozen=True)
class EscrowedEvent:
    bill_name: str
    raw: str


@dataclass(frozen=True)
class ApexEvent:
    kind: Events
    raw: str


CourierEvent = Union[ConnectionFailureEvent, SerialDataEvent, CreditEvent, EscrowedEvent, ApexEvent]
