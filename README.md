# homa

The sending half of a receiver-driven, message-oriented transport. An
application fills an outbound message with data. The sender splits the
data into packets and sends the unscheduled part at once. The rest waits
until the receiver grants it. Queued messages go out shortest remaining
first: the message with the fewest unsent bytes is served before the
others. The sender also handles the DONE, RESEND, GRANT, UNKNOWN and ERROR
packets a receiver sends back. It pings a receiver that has gone quiet and
fails a message whose timeout runs out.

The package is plain Python and needs nothing outside the standard
library.

## Installing

```
pip install .
```

With the test dependencies:

```
pip install ".[test]"
```

## What you supply

The sender does no network I/O of its own. You pass it two objects.

A **driver**, with these members:

- `max_payload_size`: the largest packet, in bytes. The first 31 bytes of
  each packet are counted as the transport header.
- `local_address`: the local IP address, as an integer.
- `queued_bytes`: the number of bytes waiting in the driver right now.
- `alloc_packet()`: returns a new `homa.protocol.Packet`.
- `send_packet(packet, ip, priority)`
- `release_packets(packets)`: takes back packets the sender is done with.

A **policy manager**, with these methods:

- `get_unscheduled_policy(ip, length)`: returns a
  `homa.protocol.UnscheduledPolicy(version, unscheduled_byte_limit, priority)`.
- `get_resend_priority()`: returns the priority used for resent packets.

Timeouts are given in the units of the sender's clock. By default the
clock is `time.perf_counter_ns`, so the units are nanoseconds. You can
pass any function that returns an integer as `clock=`.

## Modules

- `homa.sender`: `Sender(transport_id, driver, policy_manager,
  message_timeout_cycles, ping_interval_cycles, clock=None)`.
  - `alloc_message(source_port)` returns a new `OutMessage`.
    `outstanding_messages` is the number of messages allocated and not
    yet destroyed.
  - `handle_done_packet`, `handle_resend_packet`, `handle_grant_packet`,
    `handle_unknown_packet` and `handle_error_packet` each take one
    incoming `Packet`. Each one always hands the packet back to the
    driver when it is done.
  - An UNKNOWN packet makes the sender start the message again under the
    current policy. If the message was sent with `Options.NO_RETRY`, it
    fails the message instead.
  - `poll()` calls `try_send()` and then `check_timeouts()`.
    `check_timeouts()` goes to the next of the 256 buckets in turn.
- `homa.transmit`: `SenderCore` is the base class of `Sender`. It holds
  the queueing and timeout logic:
  - `send_message`, `cancel_message` and `drop_message`.
  - `try_send()` sends granted packets. It stops once more than twice
    `max_payload_size` bytes would be waiting in the driver.
  - `check_message_timeouts(now, bucket)` and
    `check_ping_timeouts(now, bucket)`.
- `homa.outmessage`: `OutMessage` is an outbound message. One message
  holds at most 1024 packets.
  - `reserve(count)` sets aside room at the front. It must come before
    any append or prepend.
  - `prepend(data)` fills the reserved room.
  - `append(data)` adds data. Data beyond the size limit is dropped and a
    warning is logged.
  - `send(destination, options)`, `cancel()` and `release()` pass the
    message to its sender.
  - `len(message)` is the payload length, without the reserved room.
    `status` is the message's current `Status`. `payload()` returns the
    message body.
  - `get_packet(index)`, `get_or_alloc_packet(index)` and
    `release_packets()` give access to the packets.
- `homa.protocol`:
  - `MessageId` and `SocketAddress`.
  - The `Status`, `Options` and `Opcode` enums.
  - `UnscheduledPolicy`.
  - The packet headers `DataHeader`, `DoneHeader`, `ResendHeader`,
    `GrantHeader`, `UnknownHeader`, `ErrorHeader`, `BusyHeader` and
    `PingHeader`.
  - `Packet(header, data, length)`.
- `homa.timeouts`: `Timeout` and `TimeoutManager`. A manager keeps
  timeouts of one fixed length in order of expiry.
- `homa.buckets`: `MessageBucket` and `MessageBucketMap` spread the
  tracked messages over 256 hashed buckets.
- `homa.strutil`: string helpers. These are `flags`, `sprintf`, `join`,
  `split`, `starts_with`, `ends_with`, `trim`, `replace_all`,
  `is_printable` and `to_string`.
- `homa.threadid`: `get_id()`, `set_name(name)` and `get_name()`. They
  give each thread a small, never-zero identifier and a friendly name.
  They use a shared `ThreadRegistry`.

Diagnostics go through the standard `logging` module, under the loggers
`homa.sender`, `homa.transmit` and `homa.outmessage`.

## Example

```python
from homa.protocol import Options, Packet, SocketAddress, UnscheduledPolicy
from homa.sender import Sender


class Driver:
    max_payload_size = 1031
    local_address = 1
    queued_bytes = 0

    def __init__(self):
        self.sent = []

    def alloc_packet(self):
        return Packet()

    def send_packet(self, packet, ip, priority):
        self.sent.append((packet, ip, priority))

    def release_packets(self, packets):
        pass


class Policy:
    def get_unscheduled_policy(self, ip, length):
        return UnscheduledPolicy(version=1, unscheduled_byte_limit=3000, priority=2)

    def get_resend_priority(self):
        return 7


driver = Driver()
sender = Sender(22, driver, Policy(), 1_000_000_000, 100_000_000)

message = sender.alloc_message(source_port=0)
message.append(b"Hello, world!")
message.send(SocketAddress(ip=22, port=60001), Options.NONE)

print(message.status)   # Status.SENT: a one-packet message goes out at once
sender.poll()           # send granted packets and process expired timeouts
```

## What this package does not do

There is no receiver side, no driver that talks to a real network, no
policy manager and no command-line program. The package sends messages
and reacts to control packets. Reading packets off the wire and passing
them to the `handle_*_packet` methods is up to the caller. So is calling
`poll()` often enough.

## Running the tests

```
pytest
```