"""The sending core: queues outgoing messages, paces packets and tracks timeouts."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Iterable, Protocol

from homa.buckets import MessageBucket, MessageBucketMap
from homa.outmessage import OutMessage
from homa.protocol import (
    DATA_HEADER_LENGTH,
    DataHeader,
    MessageId,
    Options,
    Packet,
    PingHeader,
    SocketAddress,
    Status,
    UnscheduledPolicy,
)

__all__ = ["SenderCore"]

logger = logging.getLogger(__name__)


class _Driver(Protocol):
    """What the sending core needs from the network driver."""

    max_payload_size: int
    local_address: int
    queued_bytes: int

    def alloc_packet(self) -> Packet: ...

    def release_packets(self, packets: Iterable[Packet]) -> None: ...

    def send_packet(self, packet: Packet, ip: int, priority: int) -> None: ...


class _PolicyManager(Protocol):
    """Source of the network priority policies."""

    def get_unscheduled_policy(self, ip: int, length: int) -> UnscheduledPolicy: ...

    def get_resend_priority(self) -> int: ...


class SenderCore:
    """Sends outgoing messages in shortest-remaining-first order.

    Messages of one packet go out at once; longer messages are queued and
    their granted packets are sent by :meth:`try_send`, keeping no more than
    ``DRIVER_QUEUED_BYTE_LIMIT`` bytes waiting in the driver.
    """

    #: Network priority used for control packets such as PING and BUSY.
    CONTROL_PRIORITY = 0

    def __init__(
        self,
        transport_id: int,
        driver: _Driver,
        policy_manager: _PolicyManager,
        message_timeout_cycles: int,
        ping_interval_cycles: int,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.transport_id = transport_id
        self.driver = driver
        self.policy_manager = policy_manager
        self.clock: Callable[[], int] = clock or time.perf_counter_ns
        self.DRIVER_QUEUED_BYTE_LIMIT = 2 * driver.max_payload_size
        self.message_buckets = MessageBucketMap(
            message_timeout_cycles, ping_interval_cycles
        )
        self.send_queue: list[OutMessage] = []
        self.send_ready = False
        self.next_message_sequence_number = 1
        self._sequence_lock = threading.Lock()
        self._queue_lock = threading.Lock()
        self._sending = threading.Lock()
        self._allocator_lock = threading.Lock()
        self._allocated: set[OutMessage] = set()

    # -- helpers -----------------------------------------------------------

    def _next_id(self) -> MessageId:
        with self._sequence_lock:
            sequence = self.next_message_sequence_number
            self.next_message_sequence_number += 1
        return MessageId(self.transport_id, sequence)

    @staticmethod
    def _packet_limit(byte_limit: int, message: OutMessage) -> int:
        return -(-byte_limit // message.PACKET_DATA_LENGTH)

    def _set_timeouts(self, bucket: MessageBucket, message: OutMessage) -> None:
        now = self.clock()
        bucket.message_timeouts.set_timeout(message.message_timeout, now)
        bucket.ping_timeouts.set_timeout(message.ping_timeout, now)

    @staticmethod
    def _cancel_timeouts(bucket: MessageBucket, message: OutMessage) -> None:
        bucket.message_timeouts.cancel_timeout(message.message_timeout)
        bucket.ping_timeouts.cancel_timeout(message.ping_timeout)

    def _enqueue(self, message: OutMessage) -> None:
        """Insert ``message`` into the send queue at its priority position."""
        key = message.queued.unsent_bytes
        position = next(
            (
                i
                for i, other in enumerate(self.send_queue)
                if other.queued.unsent_bytes >= key
            ),
            len(self.send_queue),
        )
        self.send_queue.insert(position, message)

    def _prioritize(self, message: OutMessage) -> int:
        """Move ``message`` forward past queued messages with more unsent bytes."""
        index = self.send_queue.index(message)
        key = message.queued.unsent_bytes
        position = next(
            (
                i
                for i, other in enumerate(self.send_queue[:index])
                if other.queued.unsent_bytes > key
            ),
            index,
        )
        if position != index:
            del self.send_queue[index]
            self.send_queue.insert(position, message)
        return position

    def _dequeue_if_in_progress(self, message: OutMessage) -> None:
        """Take a multi-packet message out of the send queue if it is queued."""
        if message.num_packets > 1 and message.state is Status.IN_PROGRESS:
            with self._queue_lock:
                if message.state is Status.IN_PROGRESS and message in self.send_queue:
                    self.send_queue.remove(message)

    def _queue_for_sending(
        self, message: OutMessage, packet_limit: int, priority: int
    ) -> None:
        """Fill in the queue bookkeeping of ``message`` and queue it.

        The caller must hold the queue lock.
        """
        info = message.queued
        info.id = message.id
        info.destination = message.destination
        info.unsent_bytes = message.message_length
        info.packets_granted = min(packet_limit, message.num_packets)
        info.priority = priority
        info.packets_sent = 0
        self._enqueue(message)
        self.send_ready = True

    def _send_single_packet(
        self, bucket: MessageBucket, message: OutMessage, priority: int
    ) -> None:
        packet = message.get_packet(0)
        if packet is None:
            raise LookupError(f"message {message.id} has no first packet")
        self.driver.send_packet(packet, message.destination.ip, priority)
        message.state = Status.SENT
        if Options.NO_KEEP_ALIVE in message.options:
            self._cancel_timeouts(bucket, message)

    def _send_control(
        self,
        header_type: type,
        ip: int,
        msg_id: MessageId,
        driver: _Driver | None = None,
    ) -> None:
        """Send a control packet carrying only ``header_type(msg_id)``."""
        driver = driver or self.driver
        packet = driver.alloc_packet()
        packet.header = header_type(message_id=msg_id)
        driver.send_packet(packet, ip, self.CONTROL_PRIORITY)
        driver.release_packets([packet])

    def _destroy_message(self, message: OutMessage) -> None:
        with self._allocator_lock:
            self._allocated.discard(message)
        message.release_packets()

    # -- public operations -------------------------------------------------

    def send_message(
        self,
        message: OutMessage,
        destination: SocketAddress,
        options: Options = Options.NONE,
    ) -> None:
        """Assign an id to ``message`` and start sending it to ``destination``."""
        if message.driver is not self.driver:
            raise ValueError("message was allocated by a different driver")
        if message.num_packets == 0:
            raise ValueError("cannot send a message without packets")

        msg_id = self._next_id()
        policy = self.policy_manager.get_unscheduled_policy(
            destination.ip, message.message_length
        )
        packet_limit = self._packet_limit(policy.unscheduled_byte_limit, message)

        message.id = msg_id
        message.destination = destination
        message.options = options
        message.state = Status.IN_PROGRESS

        actual_length = 0
        for index in range(message.num_packets):
            packet = message.get_packet(index)
            if packet is None:
                raise RuntimeError(
                    f"Incomplete message with id ({msg_id.transport_id}:"
                    f"{msg_id.sequence}); missing packet at offset "
                    f"{index * message.PACKET_DATA_LENGTH}; this shouldn't happen."
                )
            packet.header = DataHeader(
                sport=message.source.port,
                dport=destination.port,
                message_id=msg_id,
                total_length=message.message_length,
                policy_version=policy.version,
                unscheduled_index_limit=packet_limit,
                index=index,
            )
            actual_length += packet.length - message.TRANSPORT_HEADER_LENGTH

        if actual_length != message.message_length:
            raise RuntimeError(
                f"message {msg_id} holds {actual_length} bytes of data but "
                f"claims {message.message_length}"
            )
        if message.TRANSPORT_HEADER_LENGTH != DATA_HEADER_LENGTH:
            raise RuntimeError("transport header length does not match DATA header")

        bucket = self.message_buckets.get_bucket(msg_id)
        with bucket.lock:
            if message in bucket.messages:
                raise RuntimeError(f"message {msg_id} is already tracked")
            bucket.messages.append(message)
            self._set_timeouts(bucket, message)

            if message.num_packets == 1:
                self._send_single_packet(bucket, message, policy.priority)
            else:
                with self._queue_lock:
                    self._queue_for_sending(message, packet_limit, policy.priority)

    def cancel_message(self, message: OutMessage) -> None:
        """Stop sending ``message``; it becomes CANCELED."""
        bucket = self.message_buckets.get_bucket(message.id)
        with bucket.lock:
            if message in bucket.messages:
                self._cancel_timeouts(bucket, message)
                self._dequeue_if_in_progress(message)
                message.state = Status.CANCELED

    def drop_message(self, message: OutMessage) -> None:
        """Note that the application no longer holds ``message``.

        The message is destroyed at once unless it is still being sent, in
        which case it is destroyed once all its packets are out.
        """
        bucket = self.message_buckets.get_bucket(message.id)
        with bucket.lock:
            message.held = False
            if message.state is not Status.IN_PROGRESS:
                self._cancel_timeouts(bucket, message)
                if message in bucket.messages:
                    bucket.messages.remove(message)
                self._destroy_message(message)

    def check_message_timeouts(self, now: int, bucket: MessageBucket) -> None:
        """Fail every message in ``bucket`` whose message timeout has expired."""
        if not bucket.message_timeouts.any_elapsed(now):
            return
        while True:
            with bucket.lock:
                if bucket.message_timeouts.empty():
                    break
                message = bucket.message_timeouts.front()
                if not message.message_timeout.has_elapsed(now):
                    break
                if message.state is not Status.COMPLETED:
                    if message.state is Status.IN_PROGRESS:
                        with self._queue_lock:
                            if (
                                message.state is Status.IN_PROGRESS
                                and message in self.send_queue
                            ):
                                self.send_queue.remove(message)
                    message.state = Status.FAILED
                self._cancel_timeouts(bucket, message)

    def check_ping_timeouts(self, now: int, bucket: MessageBucket) -> None:
        """Ping receivers of messages in ``bucket`` that have gone quiet."""
        if not bucket.ping_timeouts.any_elapsed(now):
            return
        while True:
            with bucket.lock:
                if bucket.ping_timeouts.empty():
                    break
                message = bucket.ping_timeouts.front()
                if not message.ping_timeout.has_elapsed(now):
                    break
                if message.state in (Status.COMPLETED, Status.FAILED):
                    bucket.ping_timeouts.cancel_timeout(message.ping_timeout)
                    continue
                if (
                    Options.NO_KEEP_ALIVE in message.options
                    and message.state is Status.SENT
                ):
                    self._cancel_timeouts(bucket, message)
                    continue
                bucket.ping_timeouts.set_timeout(message.ping_timeout, self.clock())

                if message.state is Status.IN_PROGRESS:
                    with self._queue_lock:
                        info = message.queued
                        if info.packets_sent < info.packets_granted:
                            # Blocked on this sender, not on the receiver.
                            continue

                self._send_control(
                    PingHeader, message.destination.ip, message.id, message.driver
                )

    def try_send(self) -> None:
        """Send granted packets of queued messages, fewest unsent bytes first."""
        if not self.send_ready:
            return
        if not self._sending.acquire(blocking=False):
            return

        sent_ids: list[MessageId] = []
        try:
            with self._queue_lock:
                estimate = self.driver.queued_bytes
                self.send_ready = False
                index = 0
                while index < len(self.send_queue):
                    message = self.send_queue[index]
                    info = message.queued
                    while info.packets_sent < info.packets_granted:
                        packet = message.get_packet(info.packets_sent)
                        if packet is None:
                            raise LookupError(
                                f"message {info.id} is missing packet "
                                f"{info.packets_sent}"
                            )
                        estimate += packet.length
                        if estimate > self.DRIVER_QUEUED_BYTE_LIMIT:
                            break
                        self.driver.send_packet(
                            packet, message.destination.ip, info.priority
                        )
                        info.unsent_bytes -= (
                            packet.length - message.TRANSPORT_HEADER_LENGTH
                        )
                        index = self._prioritize(message)
                        info.packets_sent += 1

                    if info.packets_sent >= message.num_packets:
                        sent_ids.append(info.id)
                        message.state = Status.SENT
                        del self.send_queue[index]
                    elif info.packets_sent >= info.packets_granted:
                        index += 1
                    else:
                        # Driver queue is full; come back for the rest.
                        self.send_ready = True
                        break
        finally:
            self._sending.release()

        for msg_id in sent_ids:
            bucket = self.message_buckets.get_bucket(msg_id)
            with bucket.lock:
                message = bucket.find_message(msg_id)
                if message is None:
                    continue
                if not message.held:
                    self._cancel_timeouts(bucket, message)
                    bucket.messages.remove(message)
                    self._destroy_message(message)
                elif Options.NO_KEEP_ALIVE in message.options:
                    self._cancel_timeouts(bucket, message)