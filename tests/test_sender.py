from __future__ import annotations

import logging
from dataclasses import dataclass, field

import pytest

from homa.protocol import (
    BusyHeader,
    DataHeader,
    DoneHeader,
    ErrorHeader,
    GrantHeader,
    MessageId,
    Options,
    Packet,
    ResendHeader,
    SocketAddress,
    Status,
    UnknownHeader,
    UnscheduledPolicy,
)
from homa.sender import Sender

MESSAGE_TIMEOUT = 1000
PING_INTERVAL = 100
DEST = SocketAddress(22, 60001)
ID = MessageId(42, 1)


class FakeDriver:
    def __init__(self) -> None:
        self.max_payload_size = 1031
        self.local_address = 7
        self.queued_bytes = 0
        self.sent: list[tuple[Packet, int, int]] = []
        self.released: list[Packet] = []

    def alloc_packet(self) -> Packet:
        return Packet()

    def release_packets(self, packets) -> None:
        self.released.extend(packets)

    def send_packet(self, packet, ip, priority) -> None:
        self.sent.append((packet, ip, priority))


class FakePolicy:
    def __init__(self) -> None:
        self.unscheduled = UnscheduledPolicy(1, 5000, 1)
        self.resend_priority = 7
        self.requests: list[tuple[int, int]] = []

    def get_unscheduled_policy(self, ip, length):
        self.requests.append((ip, length))
        return self.unscheduled

    def get_resend_priority(self):
        return self.resend_priority


class Clock:
    def __init__(self) -> None:
        self.now = 10000

    def __call__(self) -> int:
        return self.now


@dataclass
class Env:
    sender: Sender
    driver: FakeDriver
    policy: FakePolicy
    clock: Clock = field(default_factory=Clock)


@pytest.fixture
def env() -> Env:
    driver = FakeDriver()
    policy = FakePolicy()
    clock = Clock()
    sender = Sender(42, driver, policy, MESSAGE_TIMEOUT, PING_INTERVAL, clock=clock)
    return Env(sender, driver, policy, clock)


def send(env: Env, size: int, options: Options = Options.NONE):
    message = env.sender.alloc_message(0)
    message.append(bytes(size))
    message.send(DEST, options)
    env.driver.sent.clear()
    return message


def track(env: Env, state: Status):
    message = env.sender.alloc_message(0)
    message.id = ID
    message.state = state
    env.sender.message_buckets.get_bucket(ID).messages.append(message)
    return message


def only_messages(caplog):
    return [(r.levelname, r.getMessage()) for r in caplog.records]


# -- alloc -------------------------------------------------------------------


def test_alloc_message_counts_outstanding(env):
    assert env.sender.outstanding_messages == 0
    message = env.sender.alloc_message(0)
    assert env.sender.outstanding_messages == 1
    message.release()
    assert env.sender.outstanding_messages == 0


# -- DONE --------------------------------------------------------------------


def test_done_without_message_only_releases(env):
    packet = Packet(header=DoneHeader(message_id=ID))
    env.sender.handle_done_packet(packet)
    assert env.driver.released == [packet]


def test_done_completes_sent_message(env):
    message = send(env, 420)
    assert message.state is Status.SENT
    packet = Packet(header=DoneHeader(message_id=message.id))
    env.sender.handle_done_packet(packet)
    assert message.state is Status.COMPLETED
    assert message.message_timeout.manager is None
    assert message.ping_timeout.manager is None
    assert env.driver.released[-1] is packet


def test_done_on_canceled_is_ignored(env, caplog):
    message = track(env, Status.CANCELED)
    with caplog.at_level(logging.DEBUG, logger="homa.sender"):
        env.sender.handle_done_packet(Packet(header=DoneHeader(message_id=ID)))
    assert message.state is Status.CANCELED
    assert caplog.records == []


@pytest.mark.parametrize(
    "state, level, text",
    [
        (
            Status.COMPLETED,
            "INFO",
            "Message (42, 1) received duplicate DONE confirmation",
        ),
        (
            Status.FAILED,
            "WARNING",
            "Message (42, 1) received DONE confirmation after the message was "
            "already declared FAILED",
        ),
        (
            Status.IN_PROGRESS,
            "WARNING",
            "Message (42, 1) received DONE confirmation while sending is still "
            "IN_PROGRESS (message not completely sent); DONE is ignored.",
        ),
        (
            Status.NOT_STARTED,
            "WARNING",
            "Message (42, 1) received DONE confirmation but sending has "
            "NOT_STARTED (message not yet sent); DONE is ignored.",
        ),
    ],
)
def test_done_unexpected_states_log(env, caplog, state, level, text):
    message = track(env, state)
    packet = Packet(header=DoneHeader(message_id=ID))
    with caplog.at_level(logging.DEBUG, logger="homa.sender"):
        env.sender.handle_done_packet(packet)
    assert only_messages(caplog) == [(level, text)]
    assert message.state is state
    assert env.driver.released == [packet]


# -- RESEND ------------------------------------------------------------------


def test_resend_basic(env):
    message = send(env, 10000)
    info = message.queued
    assert info.packets_granted == 5
    assert message.num_packets == 10
    info.packets_sent = 5
    info.priority = 6
    env.sender.send_ready = False
    env.clock.now = 20000

    packet = Packet(header=ResendHeader(message.id, index=3, num=5, priority=4))
    env.sender.handle_resend_packet(packet)

    assert env.driver.sent == [
        (message.get_packet(3), DEST.ip, 7),
        (message.get_packet(4), DEST.ip, 7),
    ]
    assert info.packets_sent == 5
    assert info.packets_granted == 8
    assert info.priority == 4
    assert message.message_timeout.expiration_cycle_time == 20000 + MESSAGE_TIMEOUT
    assert message.ping_timeout.expiration_cycle_time == 20000 + PING_INTERVAL
    assert env.sender.send_ready is True
    assert env.driver.released[-1] is packet


def test_resend_stale(env):
    packet = Packet(header=ResendHeader(ID, index=3, num=5))
    env.sender.handle_resend_packet(packet)
    assert env.driver.released == [packet]
    assert env.driver.sent == []


def test_resend_single_packet_message(env, caplog):
    message = send(env, 500)
    packet = Packet(header=ResendHeader(message.id, index=3, num=5, priority=4))
    with caplog.at_level(logging.DEBUG, logger="homa.sender"):
        env.sender.handle_resend_packet(packet)
    assert only_messages(caplog) == [
        (
            "WARNING",
            "Message (42, 1) with only 1 packet received unexpected RESEND "
            "request; peer Transport may be confused.",
        )
    ]
    assert env.driver.sent == []
    assert env.driver.released[-1] is packet


def test_resend_out_of_range(env, caplog):
    message = send(env, 10000)
    message.queued.packets_sent = 5
    packet = Packet(header=ResendHeader(message.id, index=9, num=5, priority=4))
    with caplog.at_level(logging.DEBUG, logger="homa.sender"):
        env.sender.handle_resend_packet(packet)
    assert only_messages(caplog) == [
        (
            "WARNING",
            "Message (42, 1) RESEND request range out of bounds: requested range "
            "[9, 14); message only contains 10 packets; peer Transport may be "
            "confused.",
        )
    ]
    assert message.queued.packets_granted == 5
    assert env.driver.sent == []


def test_resend_of_unsent_packets_replies_busy(env):
    message = send(env, 10000)
    info = message.queued
    info.packets_sent = 5
    packet = Packet(header=ResendHeader(message.id, index=5, num=3))
    env.sender.handle_resend_packet(packet)

    assert len(env.driver.sent) == 1
    busy, ip, _ = env.driver.sent[0]
    assert isinstance(busy.header, BusyHeader)
    assert busy.header.message_id == ID
    assert ip == DEST.ip
    assert busy in env.driver.released
    assert packet in env.driver.released
    assert info.packets_sent == 5
    assert info.packets_granted == 8


# -- GRANT -------------------------------------------------------------------


def test_grant_basic(env):
    message = send(env, 10000)
    info = message.queued
    info.priority = 2
    env.sender.send_ready = False
    packet = Packet(header=GrantHeader(message.id, byte_limit=7000, priority=6))
    env.sender.handle_grant_packet(packet)
    assert info.packets_granted == 7
    assert info.priority == 6
    assert message.message_timeout.expiration_cycle_time == 11000
    assert message.ping_timeout.expiration_cycle_time == 10100
    assert env.sender.send_ready is True
    assert env.driver.released == [packet]


def test_grant_excessive(env, caplog):
    message = send(env, 10000)
    env.sender.send_ready = False
    packet = Packet(header=GrantHeader(message.id, byte_limit=11000, priority=6))
    with caplog.at_level(logging.DEBUG, logger="homa.sender"):
        env.sender.handle_grant_packet(packet)
    assert only_messages(caplog) == [
        (
            "WARNING",
            "Message (42, 1) GRANT exceeds message length; granted packets: 11, "
            "message packets 10; extra grants are ignored.",
        )
    ]
    assert message.queued.packets_granted == 10
    assert message.queued.priority == 6
    assert env.sender.send_ready is True


def test_grant_stale(env):
    message = send(env, 10000)
    message.queued.priority = 2
    env.sender.send_ready = False
    env.clock.now = 30000
    packet = Packet(header=GrantHeader(message.id, byte_limit=4000, priority=6))
    env.sender.handle_grant_packet(packet)
    assert message.queued.packets_granted == 5
    assert message.queued.priority == 2
    assert env.sender.send_ready is False
    assert message.message_timeout.expiration_cycle_time == 30000 + MESSAGE_TIMEOUT


def test_grant_without_message(env):
    packet = Packet(header=GrantHeader(ID, byte_limit=4000))
    env.sender.handle_grant_packet(packet)
    assert env.driver.released == [packet]


# -- UNKNOWN -----------------------------------------------------------------


def test_unknown_restarts_multi_packet_message(env):
    env.policy.unscheduled = UnscheduledPolicy(1, 2000, 1)
    message = send(env, 4500)
    info = message.queued
    info.packets_sent = 4
    info.unsent_bytes = 0
    env.sender.send_ready = False
    env.policy.unscheduled = UnscheduledPolicy(2, 3000, 2)

    packet = Packet(header=UnknownHeader(message_id=message.id))
    env.sender.handle_unknown_packet(packet)

    assert env.policy.requests[-1] == (DEST.ip, 4500)
    assert message.state is Status.IN_PROGRESS
    for _, data_packet in message.data_packets():
        assert data_packet.header.policy_version == 2
        assert data_packet.header.unscheduled_index_limit == 3
    assert info.unsent_bytes == 4500
    assert info.packets_granted == 3
    assert info.priority == 2
    assert info.packets_sent == 0
    assert env.sender.send_queue.count(message) == 1
    assert env.sender.send_ready is True
    assert env.driver.released[-1] is packet


def test_unknown_resends_single_packet_message(env):
    message = send(env, 500)
    env.policy.unscheduled = UnscheduledPolicy(2, 3000, 2)
    packet = Packet(header=UnknownHeader(message_id=message.id))
    env.sender.handle_unknown_packet(packet)

    data_packet = message.get_packet(0)
    assert env.driver.sent == [(data_packet, DEST.ip, 2)]
    assert message.state is Status.SENT
    assert isinstance(data_packet.header, DataHeader)
    assert data_packet.header.policy_version == 2
    assert data_packet.header.unscheduled_index_limit == 3
    assert message not in env.sender.send_queue
    assert env.sender.send_ready is False


def test_unknown_no_keep_alive_clears_timeouts(env):
    message = send(env, 500, Options.NO_KEEP_ALIVE)
    bucket = env.sender.message_buckets.get_bucket(message.id)
    bucket.message_timeouts.set_timeout(message.message_timeout, env.clock.now)
    bucket.ping_timeouts.set_timeout(message.ping_timeout, env.clock.now)
    assert not bucket.message_timeouts.empty()

    env.sender.handle_unknown_packet(Packet(header=UnknownHeader(message.id)))

    assert len(env.driver.sent) == 1
    assert message.state is Status.SENT
    assert bucket.message_timeouts.empty()
    assert bucket.ping_timeouts.empty()


def test_unknown_no_retry_fails_message(env):
    message = send(env, 4500, Options.NO_RETRY)
    env.sender.send_ready = False
    assert message in env.sender.send_queue

    env.sender.handle_unknown_packet(Packet(header=UnknownHeader(message.id)))

    assert message not in env.sender.send_queue
    assert message.message_timeout.manager is None
    assert message.ping_timeout.manager is None
    assert message.state is Status.FAILED
    assert env.sender.send_ready is False


def test_unknown_without_message(env):
    packet = Packet(header=UnknownHeader(ID))
    env.sender.handle_unknown_packet(packet)
    assert env.driver.released == [packet]


def test_unknown_on_completed_is_ignored(env):
    message = track(env, Status.COMPLETED)
    env.sender.handle_unknown_packet(Packet(header=UnknownHeader(ID)))
    assert message.state is Status.COMPLETED
    assert message.message_timeout.expiration_cycle_time == 0
    assert message.ping_timeout.expiration_cycle_time == 0


# -- ERROR -------------------------------------------------------------------


def test_error_fails_sent_message(env):
    message = send(env, 420)
    env.sender.handle_error_packet(Packet(header=ErrorHeader(message.id)))
    assert message.state is Status.FAILED
    assert message.message_timeout.manager is None
    assert message.ping_timeout.manager is None


def test_error_on_canceled_is_ignored(env):
    message = track(env, Status.CANCELED)
    env.sender.handle_error_packet(Packet(header=ErrorHeader(ID)))
    assert message.state is Status.CANCELED


@pytest.mark.parametrize(
    "state, level, text",
    [
        (
            Status.NOT_STARTED,
            "WARNING",
            "Message (42, 1) received ERROR notification but sending has "
            "NOT_STARTED (message not yet sent); ERROR is ignored.",
        ),
        (
            Status.IN_PROGRESS,
            "WARNING",
            "Message (42, 1) received ERROR notification while sending is still "
            "IN_PROGRESS (message not completely sent); ERROR is ignored.",
        ),
        (
            Status.COMPLETED,
            "WARNING",
            "Message (42, 1) received ERROR notification after the message was "
            "already declared COMPLETED; ERROR is ignored.",
        ),
        (
            Status.FAILED,
            "INFO",
            "Message (42, 1) received duplicate ERROR notification.",
        ),
    ],
)
def test_error_unexpected_states_log(env, caplog, state, level, text):
    message = track(env, state)
    packet = Packet(header=ErrorHeader(ID))
    with caplog.at_level(logging.DEBUG, logger="homa.sender"):
        env.sender.handle_error_packet(packet)
    assert only_messages(caplog) == [(level, text)]
    assert message.state is state
    assert env.driver.released == [packet]


def test_error_without_message(env):
    packet = Packet(header=ErrorHeader(ID))
    env.sender.handle_error_packet(packet)
    assert env.driver.released == [packet]


# -- poll and timeouts -------------------------------------------------------


def test_check_timeouts_advances_bucket_index(env):
    assert env.sender.next_bucket_index == 0
    env.sender.check_timeouts()
    assert env.sender.next_bucket_index == 1


def test_poll_sends_granted_packets_within_driver_limit(env):
    message = send(env, 10000)
    env.sender.poll()
    assert [p for p, _, _ in env.driver.sent] == [
        message.get_packet(0),
        message.get_packet(1),
    ]
    assert message.queued.packets_sent == 2
    assert env.sender.send_ready is True


def test_full_round_of_check_timeouts_fails_stalled_message(env):
    message = send(env, 10000)
    env.clock.now += 2 * MESSAGE_TIMEOUT
    for _ in range(env.sender.message_buckets.NUM_BUCKETS):
        env.sender.check_timeouts()
    assert message.state is Status.FAILED
    assert message not in env.sender.send_queue
    assert message.message_timeout.manager is None
    assert env.driver.sent == []


def test_packet_without_header_is_rejected_and_released(env):
    packet = Packet()
    with pytest.raises(ValueError):
        env.sender.handle_done_packet(packet)
    assert env.driver.released == [packet]