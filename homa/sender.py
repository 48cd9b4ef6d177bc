"""The sender: reacts to control packets from receivers and drives sending."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from homa.buckets import MessageBucket, MessageBucketMap
from homa.outmessage import OutMessage
from homa.protocol import (
    BusyHeader,
    DataHeader,
    MessageId,
    Options,
    Packet,
    Status,
)
from homa.transmit import SenderCore, _Driver, _PolicyManager

__all__ = ["Sender"]

logger = logging.getLogger(__name__)


class Sender(SenderCore):
    """Manages outgoing messages following the policy set by each receiver.

    Incoming control packets are handed to the ``handle_*_packet`` methods,
    which always return the packet to the driver once done with it.
    """

    def __init__(
        self,
        transport_id: int,
        driver: _Driver,
        policy_manager: _PolicyManager,
        message_timeout_cycles: int,
        ping_interval_cycles: int,
        clock: Callable[[], int] | None = None,
    ) -> None:
        super().__init__(
            transport_id,
            driver,
            policy_manager,
            message_timeout_cycles,
            ping_interval_cycles,
            clock,
        )
        self.next_bucket_index = 0
        self._bucket_index_lock = threading.Lock()

    @property
    def outstanding_messages(self) -> int:
        """Number of messages allocated and not yet destroyed."""
        with self._allocator_lock:
            return len(self._allocated)

    def alloc_message(self, source_port: int) -> OutMessage:
        """Return a new, empty message to be filled and sent from ``source_port``."""
        message = OutMessage(self, source_port)
        with self._allocator_lock:
            self._allocated.add(message)
        return message

    def _locate(self, packet: Packet) -> tuple[MessageId, MessageBucket]:
        if packet.header is None:
            raise ValueError("packet carries no header")
        msg_id = packet.header.message_id
        return msg_id, self.message_buckets.get_bucket(msg_id)

    def handle_done_packet(self, packet: Packet) -> None:
        """Process a DONE packet: the receiver got the whole message."""
        try:
            msg_id, bucket = self._locate(packet)
            with bucket.lock:
                message = bucket.find_message(msg_id)
                if message is None:
                    return
                status = message.state
                if status is Status.SENT:
                    self._cancel_timeouts(bucket, message)
                    message.state = Status.COMPLETED
                elif status is Status.CANCELED:
                    pass
                elif status is Status.COMPLETED:
                    logger.info(
                        "Message %s received duplicate DONE confirmation", msg_id
                    )
                elif status is Status.FAILED:
                    logger.warning(
                        "Message %s received DONE confirmation after the message "
                        "was already declared FAILED",
                        msg_id,
                    )
                elif status is Status.NOT_STARTED:
                    logger.warning(
                        "Message %s received DONE confirmation but sending has "
                        "NOT_STARTED (message not yet sent); DONE is ignored.",
                        msg_id,
                    )
                elif status is Status.IN_PROGRESS:
                    logger.warning(
                        "Message %s received DONE confirmation while sending is "
                        "still IN_PROGRESS (message not completely sent); DONE is "
                        "ignored.",
                        msg_id,
                    )
                else:
                    logger.error(
                        "Message %s received DONE confirmation while in an "
                        "unexpected state; DONE is ignored.",
                        msg_id,
                    )
        finally:
            self.driver.release_packets([packet])

    def handle_resend_packet(self, packet: Packet) -> None:
        """Process a RESEND packet asking for a range of packets again."""
        try:
            msg_id, bucket = self._locate(packet)
            header = packet.header
            index = header.index
            resend_end = index + header.num
            with bucket.lock:
                message = bucket.find_message(msg_id)
                if message is None:
                    return
                if message.num_packets < 2:
                    logger.warning(
                        "Message %s with only 1 packet received unexpected RESEND "
                        "request; peer Transport may be confused.",
                        msg_id,
                    )
                    return

                self._set_timeouts(bucket, message)

                with self._queue_lock:
                    info = message.queued
                    total = message.num_packets
                    if index >= total or resend_end > total:
                        logger.warning(
                            "Message %s RESEND request range out of bounds: "
                            "requested range [%d, %d); message only contains %d "
                            "packets; peer Transport may be confused.",
                            msg_id,
                            index,
                            resend_end,
                            total,
                        )
                        return

                    # A lost GRANT may be the cause; treat the RESEND as one.
                    if info.packets_granted < resend_end:
                        info.packets_granted = resend_end
                        info.priority = header.priority
                        self.send_ready = True

                    if index >= info.packets_sent:
                        # Only unsent packets requested: tell the receiver we
                        # are alive but busy.
                        self._send_control(BusyHeader, info.destination.ip, info.id)
                    else:
                        resend_end = min(resend_end, info.packets_sent)
                        priority = self.policy_manager.get_resend_priority()
                        for i in range(index, resend_end):
                            data_packet = message.get_packet(i)
                            if data_packet is None:
                                raise LookupError(
                                    f"message {msg_id} is missing packet {i}"
                                )
                            self.driver.send_packet(
                                data_packet, message.destination.ip, priority
                            )
        finally:
            self.driver.release_packets([packet])

    def handle_grant_packet(self, packet: Packet) -> None:
        """Process a GRANT packet allowing more of a message to be sent."""
        try:
            msg_id, bucket = self._locate(packet)
            header = packet.header
            with bucket.lock:
                message = bucket.find_message(msg_id)
                if message is None:
                    return

                self._set_timeouts(bucket, message)

                if message.state is Status.IN_PROGRESS:
                    with self._queue_lock:
                        info = message.queued
                        # The packet holding the last granted byte counts as
                        # granted, so whole packets are always sent.
                        grant_index = self._packet_limit(header.byte_limit, message)
                        if grant_index > message.num_packets:
                            logger.warning(
                                "Message %s GRANT exceeds message length; granted "
                                "packets: %d, message packets %d; extra grants are "
                                "ignored.",
                                msg_id,
                                grant_index,
                                message.num_packets,
                            )
                            grant_index = message.num_packets
                        if info.packets_granted < grant_index:
                            info.packets_granted = grant_index
                            info.priority = header.priority
                            self.send_ready = True
        finally:
            self.driver.release_packets([packet])

    def handle_unknown_packet(self, packet: Packet) -> None:
        """Process an UNKNOWN packet: restart the message or fail it."""
        try:
            msg_id, bucket = self._locate(packet)
            with bucket.lock:
                message = bucket.find_message(msg_id)
                if message is None:
                    return

                status = message.state
                if status not in (Status.IN_PROGRESS, Status.SENT):
                    # Already finished; a stale reply to a ping.
                    return

                if Options.NO_RETRY in message.options:
                    self._dequeue_if_in_progress(message)
                    self._cancel_timeouts(bucket, message)
                    message.state = Status.FAILED
                    return

                self._restart(bucket, message)
        finally:
            self.driver.release_packets([packet])

    def _restart(self, bucket: MessageBucket, message: OutMessage) -> None:
        """Send ``message`` again from the start under the current policy."""
        self._dequeue_if_in_progress(message)
        message.state = Status.IN_PROGRESS

        policy = self.policy_manager.get_unscheduled_policy(
            message.destination.ip, message.message_length
        )
        packet_limit = self._packet_limit(policy.unscheduled_byte_limit, message)

        for index, data_packet in message.data_packets():
            header = data_packet.header
            if not isinstance(header, DataHeader):
                raise RuntimeError(
                    f"message {message.id} packet {index} has no DATA header"
                )
            header.policy_version = policy.version
            header.unscheduled_index_limit = packet_limit

        self._set_timeouts(bucket, message)

        if message.num_packets == 1:
            self._send_single_packet(bucket, message, policy.priority)
        else:
            with self._queue_lock:
                self._queue_for_sending(message, packet_limit, policy.priority)

    def handle_error_packet(self, packet: Packet) -> None:
        """Process an ERROR packet: the message could not be delivered."""
        try:
            msg_id, bucket = self._locate(packet)
            with bucket.lock:
                message = bucket.find_message(msg_id)
                if message is None:
                    return
                status = message.state
                if status is Status.SENT:
                    self._cancel_timeouts(bucket, message)
                    message.state = Status.FAILED
                elif status is Status.CANCELED:
                    pass
                elif status is Status.NOT_STARTED:
                    logger.warning(
                        "Message %s received ERROR notification but sending has "
                        "NOT_STARTED (message not yet sent); ERROR is ignored.",
                        msg_id,
                    )
                elif status is Status.IN_PROGRESS:
                    logger.warning(
                        "Message %s received ERROR notification while sending is "
                        "still IN_PROGRESS (message not completely sent); ERROR is "
                        "ignored.",
                        msg_id,
                    )
                elif status is Status.COMPLETED:
                    logger.warning(
                        "Message %s received ERROR notification after the message "
                        "was already declared COMPLETED; ERROR is ignored.",
                        msg_id,
                    )
                elif status is Status.FAILED:
                    logger.info(
                        "Message %s received duplicate ERROR notification.", msg_id
                    )
                else:
                    logger.error(
                        "Message %s received ERROR notification while in an "
                        "unexpected state; ERROR is ignored.",
                        msg_id,
                    )
        finally:
            self.driver.release_packets([packet])

    def poll(self) -> None:
        """Make progress: send granted packets and process expired timeouts."""
        self.try_send()
        self.check_timeouts()

    def check_timeouts(self) -> None:
        """Process the expired timeouts of the next bucket in turn."""
        with self._bucket_index_lock:
            index = self.next_bucket_index & MessageBucketMap.HASH_KEY_MASK
            self.next_bucket_index += 1
        bucket = self.message_buckets.buckets[index]
        now = self.clock()
        self.check_ping_timeouts(now, bucket)
        self.check_message_timeouts(now, bucket)