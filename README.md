# geerpc

A small remote procedure call framework on plain TCP sockets, using only the
standard library.

## Modules

- `geerpc.codec` – every message is a `Header` (`service_method`, `seq`,
  `error`) followed by a body. `new_codec(codec_type, conn)` returns the codec
  for a `CodecType`, or raises `CodecError` for an unknown one:
  - `CodecType.GOB` (`"application/gob"`) selects `BinaryCodec`, a
    length-prefixed, type-tagged binary format of its own (None, bool, int,
    float, str, bytes, lists, dicts; dataclasses are sent as dicts).
  - `CodecType.JSON` (`"applicaiton/json"`, spelled that way on the wire)
    selects `JsonCodec`, one JSON document per line.

  `Codec.read_header()`, `read_body()`, `write(header, body)` and `close()`
  work on any object with `read`/`readline`/`write`/`close`. A failed write
  closes the stream. End of stream is reported as `EOFError`.
- `geerpc.service` – `Service(receiver)` collects the public methods of an
  object whose type name starts with a capital letter. A method is published
  when its name starts with a capital letter and it takes exactly one
  annotated argument and has an annotated return type. Each becomes a
  `MethodType` with `arg_type`, `reply_type`, `new_argv()`, `new_replyv()` and
  a `num_calls` counter. `Service.call(method, argv)` converts a dict argument
  into the dataclass it is annotated with and returns the method's result.
- `geerpc.server` – `Option` is the handshake a client sends first, as one JSON
  line (`to_json()`, `Option.from_json(data)`): magic number, codec type,
  `connect_timeout` and `handle_timeout` in seconds. `Server.register(receiver)`
  publishes a service (registering the same type name twice raises
  `ValueError`); `find_service("Service.Method")` resolves a name.
  `Server.serve_conn(conn)` checks the handshake and serves requests
  concurrently; `Server.accept(listener)` serves every connection from a
  listening socket until accepting fails. A request that runs longer than the
  handle timeout (the option's, or the server's own, 10 seconds by default) is
  answered with a `request handle timeout` error. `register` and `accept` do
  the same on a module-level default server.
- `geerpc.client` – `Client` carries many concurrent calls on one connection.
  `go(service_method, args, done=None)` starts a call and returns a `Call`,
  which is also put on the `done` queue when it finishes; `Call.wait(timeout)`
  returns its reply or raises its error. `call(service_method, args,
  timeout=None)` waits for the reply and raises `TimeoutError` if it does not
  come in time. `dial(network, address, option=None)` connects (`"tcp"` or
  `"unix"`) and sends the handshake; `dial_timeout(factory, ...)` does the same
  with a client factory, raising `TimeoutError` when the handshake does not
  finish within the option's `connect_timeout` (zero means no limit).
  `parse_options` and `new_client` are the pieces `dial` is built from.
- `geerpc.demo` – an example `Foo` service with `Sum(args: Args) -> int`, and
  the `geerpc-demo` command.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Usage

A server with one service:

```python
import socket
import threading

from geerpc.demo import Foo
from geerpc.server import accept, register

register(Foo())
listener = socket.create_server(("127.0.0.1", 0))
threading.Thread(target=accept, args=(listener,), daemon=True).start()
```

A client calling it:

```python
from geerpc.client import dial
from geerpc.demo import Args

host, port = listener.getsockname()[:2]
with dial("tcp", f"{host}:{port}") as client:
    print(client.call("Foo.Sum", Args(1, 3)))  # 4
```

Calling a method on a closed client raises `ShutdownError`, and closing it a
second time does too. An error reported by the server, such as an unknown
service or method or a handle timeout, is raised from `Client.call` as a
`RuntimeError` carrying the server's message.

## Demo

`geerpc-demo` starts a server with the `Foo` service in the background, sends
it concurrent `Foo.Sum` calls (five by default, set with `-n`/`--calls`) and
prints each sum:

```
geerpc-demo
geerpc-demo --calls 10
```

## What it does not do

- The binary codec is this package's own format; it is meant for a client and
  server that both use this package.
- There is no service discovery, load balancing or HTTP transport; a client
  talks to one server address it is given.