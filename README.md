# dnsrelay

Building blocks for a forwarding DNS server, built on `dnspython`.

## Modules

- `dnsrelay.domain_matcher`: domain matchers. These are `FullMatcher`, `SubDomainMatcher`,
  `KeywordMatcher` and `RegexMatcher`, plus `MixMatcher`, which takes typed rules such as
  `full:example.com`, `domain:example.org`, `keyword:ads` and `regexp:^cdn\d+`.
  Untyped rules go to the default matcher.
  - All matching is case-insensitive and ignores a trailing dot.
  - `match(s)` returns a `(matched, value)` pair.
  - `ReverseDomainScanner`, `normalize_domain` and `trim_dot` are the helpers the
    matchers use.
- `dnsrelay.domain_loader`: loads rules into matchers.
  - `load` and `batch_load` add rules one at a time.
  - `load_from_text_reader` reads one rule per line, skips `#` comments and reports the
    line number of a bad line.
  - `parse_text_domain_file` builds a matcher from a whole text file.
  - `new_domain_mix_matcher` returns a `MixMatcher` whose default is sub-domain matching.
  - `MatcherGroup` tries several matchers in turn.
  - `DynamicMatcher` rebuilds its rules from raw bytes on `update`.
  - `parse_v2_suffix` parses filters of the form `tag@attr,tag2` into `V2Filter` objects.
- `dnsrelay.netlist`: `NetList`, a sorted list of IPv4 and IPv6 prefixes with
  binary-search lookup.
  - Call `sort()` after appending. Sorting merges prefixes that are covered by others.
  - A lookup on an unsorted list raises `NotSortedError`.
  - A bad address raises `InvalidAddrError`.
- `dnsrelay.netlist_loader`: `load`, `load_from_text` and `load_from_reader` fill a
  `NetList`.
  - In `load_from_reader`, `#` starts a comment and any text after a space is ignored.
  - `NetMatcherGroup` and `DynamicNetMatcher` mirror the domain helpers.
- `dnsrelay.elem`: `IntMatcher`, a matcher for sets of integers such as query types and
  rcodes.
- `dnsrelay.query_context`: `Context` holds a query, a copy of the original query, the
  response, `RequestMeta` (the client address and a from-UDP flag) and integer marks.
  `allocate_mark()` hands out new marks.
- `dnsrelay.pool`:
  - `Allocator` and `get_buf` hand out reusable `Buffer`s whose capacity is a power of two.
  - `BytesBufPool` pools `io.BytesIO` streams.
  - `pack_buffer(msg)` packs a DNS message into a pooled buffer. It returns
    `(wire, buffer)`.
- `dnsrelay.safe_close`: `SafeClose` coordinates the shutdown of a service thread and the
  worker threads it attaches.
- `dnsrelay.transport`: `Transport` exchanges DNS messages over connections. It opens,
  writes and reads them through functions you supply in `TransportOptions`:
  - `dial_func(timeout)`
  - `write_func(conn, msg)`
  - `read_func(conn)`

  It can do one connection per query (a negative `idle_timeout`), reuse idle connections,
  or pipeline queries over shared connections (`enable_pipeline`). Use
  `exchange(q, timeout)` and `close()`. A closed transport raises `TransportClosedError`.
- `dnsrelay.dns_handler`:
  - `Handler` is the interface.
  - `EntryHandler` runs an entry function `entry(qctx, deadline)` for each query. It
    answers SERVFAIL if the entry raises or sets no response.
  - `DummyServerHandler` echoes a reply.
- `dnsrelay.http_handler`: `DohHandler.serve_http(HttpRequest) -> HttpResponse` serves
  RFC 8484 GET and POST queries. It can take the client address from a header such as
  `X-Forwarded-For`. `read_msg_from_request` extracts the query from a request.
- `dnsrelay.server`: `Server` with `serve_udp`, `serve_tcp`, `serve_tls`, `serve_http`,
  `serve_https` and `close`, configured by `ServerOptions`:
  - `dns_handler`
  - `http_handler`
  - `tls_context` or `cert`/`key`
  - `idle_timeout`

  Each `serve_*` call blocks on the socket it is given. Once the server is closed it
  raises `ServerClosedError`.

## Install

```
pip install .
```

## Examples

```python
from dnsrelay.domain_loader import new_domain_mix_matcher, batch_load

m = new_domain_mix_matcher()
batch_load(m, ["example.com", "full:exact.example.org", "keyword:tracker"], None)

print(m.match("www.example.com."))   # (True, None)
print(m.match("other.org"))          # (False, None)
```

```python
from ipaddress import ip_address
from dnsrelay.netlist import NetList
from dnsrelay.netlist_loader import load_from_text

nl = NetList()
load_from_text(nl, "192.168.0.0/16")
nl.sort()
print(nl.contains(ip_address("192.168.1.1")))  # True
```

```python
import socket
import dns.message
from dnsrelay.dns_handler import EntryHandler
from dnsrelay.server import Server, ServerOptions

def entry(qctx, deadline):
    qctx.response = dns.message.make_response(qctx.q)

sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
sock.bind(("127.0.0.1", 5353))
server = Server(ServerOptions(dns_handler=EntryHandler(entry)))
server.serve_udp(sock)  # blocks until server.close() is called from another thread
```

## What it does not do

This is a library, not a ready-to-run resolver:

- There is no command-line program.
- There is no configuration file format.
- There is no plugin pipeline.
- There is no factory that turns an address such as `tls://1.1.1.1` into an upstream
  client. `Transport` needs the dial, write and read functions from you. There is no
  DNS-over-HTTPS client.
- There are no matchers that look inside query or response messages. Domain, IP and
  integer matchers are provided, but wiring them to message fields is left to the
  caller.

## Tests

```
pip install .[test]
pytest
```