# natkeeper

natkeeper keeps a port open on the public side of a NAT. It asks a STUN
server which public address and port that is. When the mapping changes, it
reports the new mapping. It can also forward traffic that arrives on the
mapped port to a target you choose.

It has two modes:

- **TCP** (the default). It keeps one long-lived connection to an HTTP server
  and sends `HEAD / HTTP/1.1` keep-alive requests over it. It runs one STUN
  check from the same local address and port.
- **UDP** (`-u`). Every interval it sends a one-byte datagram to the STUN
  server through the forwarding socket. It runs the STUN check again every
  `-c` intervals. Without a running forwarder, it runs the STUN check every
  interval instead.

If a session fails, natkeeper waits 5 seconds and starts a new one.

## Installation

```
pip install .
```

## Usage

```
natkeeper [options]
```

```
 -4                  use IPv4
 -6                  use IPv6
 -u                  UDP mode
 -d                  run as daemon
 -i <interface>      network interface or IP address
 -k <interval>       seconds between each keep-alive
 -c <count>          UDP STUN check cycle (every <count> intervals)
 -s <addr>[:port]    domain name or address of STUN server
 -h <addr>[:port]    domain name or address of HTTP server
 -e <path>           script path for notify mapped address
 -f <mark>           fwmark value (hex: 0x1, dec: 1, oct: 01)

Bind options:
 -b <port>[-port]    port number range for binding
                     - <0>: random allocation
                     - <port>: specified
                     - <port>-<port>: sequential allocation within the range

Forward options:
 -T <timeout>        port forwarding timeout in seconds
 -t <address>        domain name or address of forward target
 -p <port>           port number of forward target (0: use public port)
```

The options must meet these rules:

- `-s` is always required. The default STUN port is 3478.
- In TCP mode, `-h` is also required. The default HTTP port is 80.
- `-t` and `-p` must be given together.

These settings have defaults:

| Setting | Default |
| --- | --- |
| Keep-alive interval | 30 s (TCP), 10 s (UDP) |
| UDP STUN check cycle | 10 |
| Forward timeout | 120 s |

If the value of `-i` parses as an address of the chosen family, natkeeper binds
to that address. Otherwise it treats the value as an interface name. Binding to
an interface works on Linux and macOS. The firewall mark is set on Linux and
FreeBSD and ignored on other platforms.

With a bind range (`-b 5000-5010`), each new session takes the next port in
the range. After the last port it starts again at the first.

When the arguments are invalid, natkeeper prints the help text to standard
error and exits with status 1. On Ctrl-C it exits with status 130.

### Examples

Keep a TCP mapping open and print each new mapping:

```
natkeeper -s stun.example.com -h example.com
```

Keep a UDP mapping on local port 5000 and forward it to port 51820 on the
local host:

```
natkeeper -u -s stun.example.com -b 5000 -t 127.0.0.1 -p 51820
```

## Mapping notifications

When the mapping differs from the last one seen, natkeeper produces six
fields:

```
<public-addr> <public-port> <ip4p> <private-port> <protocol> <private-addr>
```

- `<ip4p>` encodes an IPv4 mapping as `2001::PPPP:AAAA:AAAA`. `PPPP` is the
  port in hex and `AAAA:AAAA` is the address. For IPv6 mappings the field is
  empty.
- `<protocol>` is `tcp` or `udp`.

Without `-e`, natkeeper prints the fields on one line to standard output.

With `-e <path>`, natkeeper starts the program at `<path>` and passes the six
fields as its arguments. It does not wait for the program to finish. If the
program cannot be started, natkeeper logs an error and keeps running.

## Forwarding

Forwarding starts when `-t` and `-p` are given. It begins once the first STUN
check succeeds, and it listens on the same local address as the keep-alive
socket.

- **TCP:** each accepted connection is relayed to the target. A relay ends
  when either side closes, or when no data has moved for the forward timeout.
- **UDP:** each sender gets its own session with the target. A session ends
  after the forward timeout passes with no traffic in either direction.

With `-p 0`, the target port is the current public port.

## Library use

These modules can also be used from Python:

- `natkeeper.conf.parse_args(argv)` returns a `Config`. It raises
  `ConfigError` on invalid arguments. `natkeeper.conf.help_text()` returns the
  usage text.
- `natkeeper.stun.build_request(transaction_id)` builds a STUN Binding Request.
- `natkeeper.stun.parse_attributes(body, transaction_id)` decodes
  `MAPPED-ADDRESS` or `XOR-MAPPED-ADDRESS` into `(family, address, port)`. It
  raises `StunError` on failure.
- `natkeeper.notify.ip4p_address(addr, port)` returns the IP4P form of an
  IPv4 mapping. `notify_fields` and `notify` produce and deliver the
  notification fields.
- `natkeeper.tnsk.TcpKeeper` and `natkeeper.unsk.UdpKeeper` are the asyncio
  session keepers. `natkeeper.cli.create_keeper(config)` chooses between them.
- `natkeeper.cli.main(argv=None)` is the command-line entry point.

## Limitations

The bind can fail because another socket already listens on the same port.
In that case natkeeper looks up that listener through `/proc` and tries to set
the reuse-port flag on it. This only works when the listener belongs to the
natkeeper process itself. For a listener in another process, natkeeper logs
an error and does not change its socket.