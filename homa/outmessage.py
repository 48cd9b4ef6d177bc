"""Outgoing messages: data split into packets ready to be sent."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from homa.protocol import (
    DATA_HEADER_LENGTH,
    MessageId,
    Options,
    Packet,
    SocketAddress,
    Status,
)
from homa.timeouts import Timeout

__all__ = ["MAX_MESSAGE_PACKETS", "QueuedMessageInfo", "OutMessage"]

logger = logging.getLogger(__name__)

#: The largest number of packets a single message may hold.
MAX_MESSAGE_PACKETS = 1024


class _Driver(Protocol):
    """What an outgoing message needs from the network driver."""

    max_payload_size: int
    local_address: int

    def alloc_packet(self) -> Packet: ...

    def release_packets(self, packets: Iterable[Packet]) -> None: ...


class _Sender(Protocol):
    """What an outgoing message needs from the sender that owns it."""

    driver: _Driver

    def send_message(
        self, message: "OutMessage", destination: SocketAddress, options: Options
    ) -> None: ...

    def cancel_message(self, message: "OutMessage") -> None: ...

    def drop_message(self, message: "OutMessage") -> None: ...


@dataclass
class QueuedMessageInfo:
    """Send-queue bookkeeping for a message whose packets are being sent."""

    id: MessageId = field(default_factory=lambda: MessageId(0, 0))
    destination: SocketAddress = field(default_factory=SocketAddress)
    unsent_bytes: int = 0
    packets_granted: int = 0
    priority: int = 0
    packets_sent: int = 0


class OutMessage:
    """A message assembled by the application and sent by a sender.

    The message data is spread over packets holding ``PACKET_DATA_LENGTH``
    bytes each; every packet's wire length also counts the transport header.
    """

    MAX_MESSAGE_PACKETS = MAX_MESSAGE_PACKETS

    def __init__(self, sender: _Sender, source_port: int) -> None:
        self.sender = sender
        self.driver = sender.driver
        self.TRANSPORT_HEADER_LENGTH = DATA_HEADER_LENGTH
        self.PACKET_DATA_LENGTH = (
            self.driver.max_payload_size - self.TRANSPORT_HEADER_LENGTH
        )
        self.id = MessageId(0, 0)
        self.source = SocketAddress(self.driver.local_address, source_port)
        self.destination = SocketAddress()
        self.options = Options.NONE
        self.held = True
        self.start = 0
        self.message_length = 0
        self.packets: dict[int, Packet] = {}
        self.state = Status.NOT_STARTED
        self.message_timeout: Timeout[OutMessage] = Timeout(self)
        self.ping_timeout: Timeout[OutMessage] = Timeout(self)
        self.queued = QueuedMessageInfo()

    @property
    def num_packets(self) -> int:
        """Number of packets the message currently holds."""
        return len(self.packets)

    @property
    def status(self) -> Status:
        """The message's current state."""
        return self.state

    @property
    def _max_message_length(self) -> int:
        return self.PACKET_DATA_LENGTH * self.MAX_MESSAGE_PACKETS

    def __len__(self) -> int:
        return self.message_length - self.start

    def __repr__(self) -> str:
        return (
            f"OutMessage(id={self.id}, state={self.state.name}, "
            f"length={len(self)}, packets={self.num_packets})"
        )

    @staticmethod
    def _write(packet: Packet, offset: int, chunk: bytes) -> None:
        data = packet.data
        if len(data) < offset:
            data.extend(bytes(offset - len(data)))
        data[offset : offset + len(chunk)] = chunk

    def append(self, data: bytes | bytearray | memoryview) -> None:
        """Add ``data`` to the end of the message.

        Data beyond the maximum message size is dropped with a warning.
        """
        raw = bytes(data)
        count = len(raw)
        limit = self._max_message_length
        if self.message_length + count > limit:
            logger.warning(
                "Max message size limit (%dB) reached; %d of %d bytes appended",
                limit,
                limit - self.message_length,
                count,
            )
            count = limit - self.message_length

        index, offset = divmod(self.message_length, self.PACKET_DATA_LENGTH)
        copied = 0
        while copied < count:
            size = min(count - copied, self.PACKET_DATA_LENGTH - offset)
            packet = self.get_or_alloc_packet(index)
            self._write(packet, offset, raw[copied : copied + size])
            packet.length += size
            copied += size
            index += 1
            offset = 0

        self.message_length += count

    def prepend(self, data: bytes | bytearray | memoryview) -> None:
        """Write ``data`` into the reserved space just before the message body."""
        raw = bytes(data)
        count = len(raw)
        if count > self.start:
            raise ValueError(
                f"cannot prepend {count} bytes; only {self.start} bytes reserved"
            )
        self.start -= count

        index, offset = divmod(self.start, self.PACKET_DATA_LENGTH)
        copied = 0
        while copied < count:
            size = min(count - copied, self.PACKET_DATA_LENGTH - offset)
            packet = self.get_packet(index)
            if packet is None:
                raise LookupError(f"reserved packet {index} is missing")
            self._write(packet, offset, raw[copied : copied + size])
            copied += size
            index += 1
            offset = 0

    def reserve(self, count: int) -> None:
        """Set aside ``count`` bytes at the front for a later ``prepend``.

        Must be called before any data is appended or prepended.
        """
        if count < 0:
            raise ValueError("count must not be negative")
        if self.start != self.message_length:
            raise RuntimeError("reserve() must be called before append() or prepend()")

        limit = self._max_message_length
        if self.start + count > limit:
            logger.warning(
                "Max message size limit (%dB) reached; %d of %d bytes reserved",
                limit,
                limit - self.start,
                count,
            )
            count = limit - self.start

        index, offset = divmod(self.start, self.PACKET_DATA_LENGTH)
        reserved = 0
        while reserved < count:
            size = min(count - reserved, self.PACKET_DATA_LENGTH - offset)
            packet = self.get_or_alloc_packet(index)
            packet.length += size
            reserved += size
            index += 1
            offset = 0

        self.start += count
        self.message_length += count

    def cancel(self) -> None:
        """Stop sending this message."""
        self.sender.cancel_message(self)

    def release(self) -> None:
        """Tell the sender the application no longer holds this message."""
        self.sender.drop_message(self)

    def send(self, destination: SocketAddress, options: Options = Options.NONE) -> None:
        """Start sending the message to ``destination``."""
        self.sender.send_message(self, destination, options)

    def get_packet(self, index: int) -> Packet | None:
        """Return the packet at ``index``, or None if there is none."""
        return self.packets.get(index)

    def get_or_alloc_packet(self, index: int) -> Packet:
        """Return the packet at ``index``, allocating it from the driver if needed."""
        packet = self.packets.get(index)
        if packet is None:
            packet = self.driver.alloc_packet()
            packet.length = self.TRANSPORT_HEADER_LENGTH
            self.packets[index] = packet
        return packet

    def release_packets(self) -> None:
        """Hand every packet of the message back to the driver."""
        packets = [self.packets[i] for i in sorted(self.packets)]
        self.packets.clear()
        self.driver.release_packets(packets)

    def data_packets(self) -> list[tuple[int, Packet]]:
        """Return ``(index, packet)`` pairs in packet order."""
        return sorted(self.packets.items(), key=lambda item: item[0])

    def payload(self) -> bytes:
        """Return the message body, excluding reserved but unfilled headroom."""
        joined = b"".join(
            bytes(p.data[: p.length - self.TRANSPORT_HEADER_LENGTH]).ljust(
                p.length - self.TRANSPORT_HEADER_LENGTH, b"\0"
            )
            for _, p in self.data_packets()
        )
        return joined[self.start : self.message_length]

    def _describe(self) -> dict[str, Any]:
        return {"id": self.id, "state": self.state, "length": len(self)}