"""Message identifiers, addresses, states and packet headers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import ClassVar, Union

__all__ = [
    "DATA_HEADER_LENGTH",
    "MessageId",
    "SocketAddress",
    "Status",
    "Options",
    "Opcode",
    "UnscheduledPolicy",
    "DataHeader",
    "DoneHeader",
    "ResendHeader",
    "GrantHeader",
    "UnknownHeader",
    "ErrorHeader",
    "BusyHeader",
    "PingHeader",
    "Header",
    "Packet",
]

#: Number of bytes at the start of every DATA packet taken by its header.
DATA_HEADER_LENGTH = 31


@dataclass(frozen=True, order=True)
class MessageId:
    """Uniquely identifies a message: the sending transport and a sequence."""

    transport_id: int
    sequence: int

    def __str__(self) -> str:
        return f"({self.transport_id}, {self.sequence})"


@dataclass(frozen=True)
class SocketAddress:
    """An IP address (as an integer) together with a port."""

    ip: int = 0
    port: int = 0


class Status(enum.Enum):
    """Lifecycle state of an outgoing message."""

    NOT_STARTED = enum.auto()
    IN_PROGRESS = enum.auto()
    SENT = enum.auto()
    COMPLETED = enum.auto()
    CANCELED = enum.auto()
    FAILED = enum.auto()


class Options(enum.Flag):
    """Flags requesting non-default send behaviour."""

    NONE = 0
    NO_RETRY = 1
    NO_KEEP_ALIVE = 2


class Opcode(enum.Enum):
    """Kind of a protocol packet."""

    DATA = enum.auto()
    GRANT = enum.auto()
    DONE = enum.auto()
    RESEND = enum.auto()
    BUSY = enum.auto()
    PING = enum.auto()
    UNKNOWN = enum.auto()
    ERROR = enum.auto()


@dataclass(frozen=True)
class UnscheduledPolicy:
    """Policy for the unscheduled portion of a message."""

    version: int
    unscheduled_byte_limit: int
    priority: int


@dataclass
class DataHeader:
    """Header of a DATA packet carrying part of a message."""

    opcode: ClassVar[Opcode] = Opcode.DATA

    sport: int
    dport: int
    message_id: MessageId
    total_length: int
    policy_version: int
    unscheduled_index_limit: int
    index: int


@dataclass
class DoneHeader:
    """Header of a DONE packet: the receiver has the whole message."""

    opcode: ClassVar[Opcode] = Opcode.DONE

    message_id: MessageId


@dataclass
class ResendHeader:
    """Header of a RESEND packet asking for packets ``[index, index+num)``."""

    opcode: ClassVar[Opcode] = Opcode.RESEND

    message_id: MessageId
    index: int = 0
    num: int = 0
    priority: int = 0


@dataclass
class GrantHeader:
    """Header of a GRANT packet allowing bytes up to ``byte_limit``."""

    opcode: ClassVar[Opcode] = Opcode.GRANT

    message_id: MessageId
    byte_limit: int = 0
    priority: int = 0


@dataclass
class UnknownHeader:
    """Header of an UNKNOWN packet: the receiver has no such message."""

    opcode: ClassVar[Opcode] = Opcode.UNKNOWN

    message_id: MessageId


@dataclass
class ErrorHeader:
    """Header of an ERROR packet: the message could not be delivered."""

    opcode: ClassVar[Opcode] = Opcode.ERROR

    message_id: MessageId


@dataclass
class BusyHeader:
    """Header of a BUSY packet: the sender is alive but busy elsewhere."""

    opcode: ClassVar[Opcode] = Opcode.BUSY

    message_id: MessageId


@dataclass
class PingHeader:
    """Header of a PING packet checking that the receiver knows a message."""

    opcode: ClassVar[Opcode] = Opcode.PING

    message_id: MessageId


Header = Union[
    DataHeader,
    DoneHeader,
    ResendHeader,
    GrantHeader,
    UnknownHeader,
    ErrorHeader,
    BusyHeader,
    PingHeader,
]


@dataclass(eq=False)
class Packet:
    """A network packet: a protocol header, data bytes and a wire length.

    Packets compare by identity, as each stands for one buffer.
    """

    header: Header | None = None
    data: bytearray = field(default_factory=bytearray)
    length: int = 0